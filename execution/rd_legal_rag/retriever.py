"""
Retrieval Layer for VIGENTE Legal Instruments

Embeds the user query and searches only chunks of in-force versions.
When the query names a specific law ("Ley 41-08"), the chunks of that
instrument are fetched by canonical key and merged ahead of the semantic
matches, so a named statute is never pushed out by more "typical" text.

Retrieval failures degrade to an empty result: callers treat "no chunks"
as insufficient evidence, not as a fault.
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Optional

from .canonical import asked_canonical_key, asked_law_number, mentions_law
from .corpus_store import VigenteChunk

logger = logging.getLogger(__name__)

REASON_TOO_FEW_CHUNKS = "too_few_chunks"
REASON_ASKED_LAW_MISSING = "asked_law_missing"


def _default_top_k() -> int:
    try:
        return max(1, int(os.getenv("RAG_TOP_K", "8")))
    except ValueError:
        logger.warning("RAG_TOP_K is not an integer; using 8")
        return 8


@dataclass
class RetrievalConfig:
    """Configuration for VIGENTE retrieval."""
    # Chunks returned after the canonical/semantic merge
    top_k: int = field(default_factory=_default_top_k)

    # Below this many chunks the evidence is insufficient
    min_chunks: int = 4

    # Characters of chunk text shown in probe previews
    preview_len: int = 200


@dataclass
class RetrievalResult:
    """Merged retrieval output for one query."""
    chunks: list[VigenteChunk]
    asked_canonical: Optional[str] = None
    by_canonical_used: bool = False
    latency_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.chunks)

    def joined_text(self) -> str:
        """All chunk texts concatenated, for textual claim checks."""
        return "\n".join(c.chunk_text for c in self.chunks)

    def source_urls(self) -> set[str]:
        return {c.citation.source_url for c in self.chunks if c.citation.source_url}


@dataclass
class SufficiencyVerdict:
    """Whether retrieved evidence is enough to attempt an answer."""
    sufficient: bool
    reason: Optional[str] = None


def merge_chunks(
    canonical: list[VigenteChunk],
    semantic: list[VigenteChunk],
    top_k: int,
) -> list[VigenteChunk]:
    """Canonical-key results first, then unseen semantic results, capped at ``top_k``."""
    merged: list[VigenteChunk] = []
    seen: set[tuple[str, int]] = set()
    for chunk in list(canonical) + list(semantic):
        if chunk.dedup_key in seen:
            continue
        seen.add(chunk.dedup_key)
        merged.append(chunk)
        if len(merged) >= top_k:
            break
    return merged


def chunk_matches_law(chunk: VigenteChunk, canonical_key: str, number: Optional[str]) -> bool:
    """True when a chunk belongs to, or textually mentions, the asked law."""
    if chunk.citation.canonical_key == canonical_key:
        return True
    if number and (mentions_law(chunk.chunk_text, number) or mentions_law(chunk.citation.title, number)):
        return True
    return False


class VigenteRetriever:
    """
    Semantic search over VIGENTE chunks with canonical-key augmentation.

    Pipeline:
    1. Embed the query
    2. Similarity search over VIGENTE versions
    3. If a law is named, fetch its chunks by canonical key
    4. Merge (canonical first), dedup by (source_url, chunk_index), cap at top_k
    """

    def __init__(self, store, embeddings, config: Optional[RetrievalConfig] = None):
        """
        Args:
            store: CorpusStore (or any object with search_vigente/search_by_canonical_key)
            embeddings: Embedding service with embed_query()
            config: Optional retrieval configuration
        """
        self.store = store
        self.embeddings = embeddings
        self.config = config or RetrievalConfig()

    def _embed(self, query: str) -> Optional[list[float]]:
        try:
            return self.embeddings.embed_query(query)
        except Exception as e:
            logger.warning(f"Query embedding failed: {type(e).__name__}: {e}")
            return None

    def _semantic(self, embedding: Optional[list[float]], top_k: int) -> list[VigenteChunk]:
        if embedding is None:
            return []
        try:
            return self.store.search_vigente(embedding, top_k)
        except Exception as e:
            logger.warning(f"Similarity search failed: {type(e).__name__}: {e}")
            return []

    def retrieve_valid_chunks(self, query: str, top_k: Optional[int] = None) -> list[VigenteChunk]:
        """
        Semantic search only.

        Returns:
            At most ``top_k`` VIGENTE chunks by descending similarity; empty
            when the embedding service or the search is unavailable
        """
        top_k = top_k or self.config.top_k
        return self._semantic(self._embed(query), top_k)

    def retrieve(self, query: str, top_k: Optional[int] = None) -> RetrievalResult:
        """
        Semantic search plus canonical-key augmentation.

        Args:
            query: User question
            top_k: Result cap (defaults to config.top_k)

        Returns:
            RetrievalResult with merged chunks
        """
        start = time.time()
        top_k = top_k or self.config.top_k

        embedding = self._embed(query)
        semantic = self._semantic(embedding, top_k)

        asked = asked_canonical_key(query)
        canonical: list[VigenteChunk] = []
        if asked:
            try:
                canonical = self.store.search_by_canonical_key(asked, top_k, query_embedding=embedding)
            except Exception as e:
                logger.warning(f"Canonical lookup for {asked} failed, keeping semantic results: {e}")
                canonical = []

        chunks = merge_chunks(canonical, semantic, top_k)
        latency = (time.time() - start) * 1000
        logger.info(
            f"Retrieved {len(chunks)} chunks in {latency:.0f}ms "
            f"(semantic={len(semantic)}, canonical={len(canonical)}, asked={asked})"
        )
        return RetrievalResult(
            chunks=chunks,
            asked_canonical=asked,
            by_canonical_used=bool(canonical),
            latency_ms=latency,
        )

    def check_sufficiency(self, result: RetrievalResult, query: str = "") -> SufficiencyVerdict:
        """
        Decide whether the evidence can back an answer.

        Insufficient when fewer than ``min_chunks`` chunks were retrieved, or
        when a named law was asked and no chunk carries or mentions it.
        """
        if result.total < self.config.min_chunks:
            return SufficiencyVerdict(False, REASON_TOO_FEW_CHUNKS)

        if result.asked_canonical:
            number = asked_law_number(query) or result.asked_canonical.split("-", 1)[-1]
            if not any(chunk_matches_law(c, result.asked_canonical, number) for c in result.chunks):
                return SufficiencyVerdict(False, REASON_ASKED_LAW_MISSING)

        return SufficiencyVerdict(True)
