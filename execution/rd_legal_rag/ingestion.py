"""
Ingestion Pipeline

Single entry point used by every loader (manual files, the Consultoría
crawl and the enrichment worker) to turn raw instrument text into a
versioned, chunked and embedded corpus entry.

Steps: normalize -> hash -> derive canonical identity -> date -> chunk ->
embed -> persist (instrument, version, chunks).
"""

import time
import logging
from dataclasses import dataclass
from typing import Optional

from .canonical import CanonicalInfo, derive_canonical, extract_published_date
from .chunker import ChunkConfig, chunk_text, content_hash, normalize_text
from .corpus_store import STATUS_VIGENTE
from .metrics import get_metrics_collector

logger = logging.getLogger(__name__)

SOURCE_CONSULTORIA = ("ConsultoriaGovDo", "https://www.consultoria.gov.do/")
SOURCE_MANUAL = ("ManualUpload", "manual://")

OUTCOME_CREATED = "created"
OUTCOME_DEDUP = "dedup"


class IngestionError(Exception):
    """Ingestion of one document failed; carries the document's canonical key."""

    def __init__(self, canonical_key: str, message: str):
        self.canonical_key = canonical_key
        super().__init__(f"[{canonical_key}] {message}")


@dataclass
class PreparedDocument:
    """A normalized document with its identity, ready to persist."""
    canonical: CanonicalInfo
    title: str
    text: str
    content_hash: str
    source_url: str
    published_date: str
    effective_date: Optional[str] = None
    status: str = STATUS_VIGENTE
    gazette_ref: Optional[str] = None

    @property
    def canonical_key(self) -> str:
        return self.canonical.canonical_key


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""
    outcome: str  # "created" or "dedup"
    canonical_key: str
    version_id: int
    chunks_count: int
    rechunked: bool = False

    @property
    def created(self) -> bool:
        return self.outcome == OUTCOME_CREATED


class IngestionPipeline:
    """
    Normalizes, chunks, embeds and persists legal instruments.

    Embeddings are computed before any version is written, so a provider
    failure never leaves a version behind. A version that was inserted but
    lost its chunks (crash between the two writes) is repaired on the next
    ingestion of the same text: the dedup hit finds zero chunks and
    regenerates them.
    """

    def __init__(self, store, embeddings, chunk_config: Optional[ChunkConfig] = None):
        """
        Args:
            store: CorpusStore (or any object with the same contract)
            embeddings: Embedding service with embed_documents()
            chunk_config: Window size/overlap (defaults to 1000/150)
        """
        self.store = store
        self.embeddings = embeddings
        self.chunk_config = chunk_config or ChunkConfig()

    def prepare(
        self,
        raw_text: str,
        title: str,
        source_url: str,
        description: str = "",
        published_date: Optional[str] = None,
        effective_date: Optional[str] = None,
        status: str = STATUS_VIGENTE,
        gazette_ref: Optional[str] = None,
        canonical: Optional[CanonicalInfo] = None,
    ) -> PreparedDocument:
        """
        Normalize raw text and resolve the document's identity.

        Args:
            raw_text: Text as fetched or read from disk
            title: Human title
            source_url: Origin URL (``manual://`` for local files)
            description: Extra text scanned by the date heuristic
            published_date: Explicit ISO date, overrides the heuristic
            effective_date: Optional ISO date
            status: VIGENTE or DEROGADA
            gazette_ref: Optional Gaceta Oficial reference
            canonical: Explicit identity, overrides title/URL derivation

        Returns:
            PreparedDocument
        """
        text = normalize_text(raw_text or "")
        canonical = canonical or derive_canonical(title, source_url)
        return PreparedDocument(
            canonical=canonical,
            title=title,
            text=text,
            content_hash=content_hash(text),
            source_url=source_url,
            published_date=published_date or extract_published_date(text, description),
            effective_date=effective_date,
            status=status.upper(),
            gazette_ref=gazette_ref,
        )

    def ingest(
        self,
        document: PreparedDocument,
        source: tuple[str, str] = SOURCE_CONSULTORIA,
        dedup_scope: str = "instrument",
        rechunk_on_dedup: bool = False,
    ) -> IngestResult:
        """
        Persist a prepared document.

        Args:
            document: Output of ``prepare``
            source: (name, base_url) of the source record
            dedup_scope: "instrument" or "global" content-hash dedup
            rechunk_on_dedup: Regenerate chunks even when the version exists

        Returns:
            IngestResult

        Raises:
            IngestionError: on any failure, tagged with the canonical key
        """
        key = document.canonical_key
        start = time.time()

        if not document.text:
            raise IngestionError(key, "document text is empty after normalization")

        try:
            if dedup_scope == "global" and not rechunk_on_dedup:
                existing = self.store.find_version_by_hash(document.content_hash)
                if existing is not None and self.store.count_chunks(existing) > 0:
                    logger.info(f"[{key}] dedup by global hash: version {existing}")
                    return IngestResult(
                        outcome=OUTCOME_DEDUP,
                        canonical_key=key,
                        version_id=existing,
                        chunks_count=self.store.count_chunks(existing),
                    )

            chunks = chunk_text(document.text, self.chunk_config)
            vectors = self.embeddings.embed_documents(chunks)
            if len(vectors) != len(chunks):
                raise IngestionError(
                    key, f"embedding count mismatch: {len(vectors)} vectors for {len(chunks)} chunks"
                )
            triples = [(i, text, vec) for i, (text, vec) in enumerate(zip(chunks, vectors))]

            source_id = self.store.ensure_source(*source)
            instrument_id = self.store.upsert_instrument(
                canonical_key=key,
                title=document.title,
                type=document.canonical.type,
                number=document.canonical.number,
            )
            version = self.store.insert_version_if_new(
                instrument_id=instrument_id,
                source_id=source_id,
                content_text=document.text,
                content_hash=document.content_hash,
                published_date=document.published_date,
                source_url=document.source_url,
                effective_date=document.effective_date,
                gazette_ref=document.gazette_ref,
                status=document.status,
                dedup_scope=dedup_scope,
            )

            if version.created:
                count = self.store.replace_chunks(version.version_id, triples)
                get_metrics_collector().record_ingestion(True, count, (time.time() - start) * 1000)
                logger.info(
                    f"[{key}] created version {version.version_id} with {count} chunks "
                    f"in {(time.time() - start) * 1000:.0f}ms"
                )
                return IngestResult(OUTCOME_CREATED, key, version.version_id, count)

            existing_chunks = self.store.count_chunks(version.version_id)
            if existing_chunks == 0 or rechunk_on_dedup:
                count = self.store.replace_chunks(version.version_id, triples)
                logger.info(
                    f"[{key}] dedup on version {version.version_id}; "
                    f"regenerated {count} chunks (had {existing_chunks})"
                )
                return IngestResult(OUTCOME_DEDUP, key, version.version_id, count, rechunked=True)

            get_metrics_collector().record_ingestion(False, existing_chunks, (time.time() - start) * 1000)
            logger.info(f"[{key}] dedup on version {version.version_id} ({existing_chunks} chunks kept)")
            return IngestResult(OUTCOME_DEDUP, key, version.version_id, existing_chunks)

        except IngestionError:
            raise
        except Exception as e:
            logger.error(f"[{key}] ingestion failed: {type(e).__name__}: {e}")
            raise IngestionError(key, str(e)) from e

    def ingest_text(
        self,
        raw_text: str,
        title: str,
        source_url: str,
        source: tuple[str, str] = SOURCE_CONSULTORIA,
        dedup_scope: str = "instrument",
        **prepare_kwargs,
    ) -> IngestResult:
        """Convenience wrapper: ``prepare`` followed by ``ingest``."""
        document = self.prepare(raw_text, title, source_url, **prepare_kwargs)
        return self.ingest(document, source=source, dedup_scope=dedup_scope)
