"""
Embedding Service for the Dominican Legal RAG

Embeds chunks and user questions with OpenAI text-embedding-3-small
(1536 dimensions). Documents and queries share the model, so VIGENTE chunks
and questions live in one vector space.

Documents are embedded in batches bounded by item count and characters.
Query vectors are kept in a bounded in-memory cache, since the same
question is often embedded by the chat path and the probe. Transient
provider errors (rate limits, timeouts, dropped connections) are retried
by the OpenAI client itself; what still fails surfaces as EmbeddingError.
"""

import os
import hashlib
import logging
from collections import OrderedDict
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when the embedding provider cannot return vectors."""


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 64
    max_input_chars: int = 8000  # Inputs are truncated before embedding
    max_chars_per_batch: int = 240000
    use_cache: bool = True
    max_cache_entries: int = 512
    max_retries: int = 3  # handed to the OpenAI client
    timeout: float = 60.0


class OpenAIEmbeddingService:
    """
    Embedding service using OpenAI's embeddings API.

    text-embedding-3-small handles Spanish legal text well and accepts up to
    8191 tokens per input; inputs are cut at ``max_input_chars`` first.
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._init_client()

    def _init_client(self):
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            logger.warning(
                "OPENAI_API_KEY not found. Embeddings will fail. "
                "Set the environment variable to enable retrieval and ingestion."
            )
            return

        from openai import OpenAI
        self._client = OpenAI(
            api_key=api_key,
            timeout=self.config.timeout,
            max_retries=self.config.max_retries,
        )
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def _require_client(self) -> None:
        if not self._client:
            raise EmbeddingError("OpenAI client not initialized. Check OPENAI_API_KEY.")

    def _truncate(self, text: str) -> str:
        return text[: self.config.max_input_chars]

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and size limits."""
        batches = []
        current_batch = []
        current_chars = 0

        for text in texts:
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_chars + len(text) > self.config.max_chars_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_chars = 0
            current_batch.append(text)
            current_chars += len(text)

        if current_batch:
            batches.append(current_batch)
        return batches

    def _call_provider(self, texts: list[str]) -> list[list[float]]:
        """One embeddings request; vectors in input order."""
        from openai import APIError

        try:
            response = self._client.embeddings.create(model=self.config.model, input=texts)
        except APIError as e:
            logger.error(f"OpenAI embedding failed: {type(e).__name__}: {e}")
            raise EmbeddingError(f"OpenAI embedding failed: {type(e).__name__}: {e}") from e

        # The API reports an index per item; do not rely on response order
        ordered = sorted(response.data, key=lambda item: item.index)
        vectors = [list(item.embedding) for item in ordered]
        if len(vectors) != len(texts):
            raise EmbeddingError(f"OpenAI returned {len(vectors)} embeddings for {len(texts)} inputs")
        return vectors

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for chunks.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, in input order
        """
        if not texts:
            return []
        self._require_client()

        batches = self._create_batches([self._truncate(t) for t in texts])
        logger.info(f"Embedding {len(texts)} chunks in {len(batches)} batches")

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(self._call_provider(batch))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")
        return embeddings

    def embed_query(self, query: str) -> list[float]:
        """Embedding of a user question, served from the cache when repeated."""
        self._require_client()
        text = self._truncate(query)
        key = self._cache_key(text)

        if self.config.use_cache and key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]

        vector = self._call_provider([text])[0]
        if self.config.use_cache:
            self._cache[key] = vector
            while len(self._cache) > self.config.max_cache_entries:
                self._cache.popitem(last=False)
        return vector

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(f"{self.config.model}:{text}".encode()).hexdigest()[:32]

    @property
    def dimensions(self) -> int:
        return self.config.dimensions


def get_embedding_service(config: Optional[EmbeddingConfig] = None) -> OpenAIEmbeddingService:
    """
    Factory function to get the configured embedding service.

    Args:
        config: Optional EmbeddingConfig; ``EMBEDDING_MODEL`` overrides the model

    Returns:
        Configured embedding service
    """
    config = config or EmbeddingConfig(
        model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
    )
    if config.provider != "openai":
        raise ValueError(f"Unsupported embedding provider '{config.provider}'")
    return OpenAIEmbeddingService(config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()
    query = " ".join(sys.argv[1:]) or "¿Cuál es el período de prueba según la Ley 41-08?"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
