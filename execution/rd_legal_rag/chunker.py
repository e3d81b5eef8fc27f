"""
Sliding-Window Chunker for Dominican Legal Texts

Normalizes raw instrument text, computes its content hash and splits it
into fixed-size overlapping windows ready for embedding.

The same normalization runs at ingestion time and at enrichment
verification time, so a document fetched twice hashes identically.
"""

import re
import hashlib
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_CRLF = re.compile(r"\r\n")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_HORIZONTAL_SPACE = re.compile(r"[ \t]+")


@dataclass(frozen=True)
class ChunkConfig:
    """Configuration for the sliding-window chunker."""
    chunk_size: int = 1000
    chunk_overlap: int = 150

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap must satisfy 0 <= overlap < size "
                f"(size={self.chunk_size}, overlap={self.chunk_overlap})"
            )

    @classmethod
    def for_preset(cls, preset: str) -> "ChunkConfig":
        """Return a named preset ("default" or "constitucion")."""
        if preset not in CHUNK_PRESETS:
            raise ValueError(
                f"Unknown chunk preset '{preset}'. "
                f"Choose from: {', '.join(sorted(CHUNK_PRESETS))}"
            )
        return CHUNK_PRESETS[preset]


CHUNK_PRESETS = {
    "default": ChunkConfig(chunk_size=1000, chunk_overlap=150),
    # The Constitution has long articles; wider windows keep them together
    "constitucion": ChunkConfig(chunk_size=1200, chunk_overlap=150),
}


def normalize_text(text: str) -> str:
    """Collapse line endings, blank-line runs and horizontal whitespace."""
    text = _CRLF.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    text = _HORIZONTAL_SPACE.sub(" ", text)
    return text.strip()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 bytes of ``text``.

    Callers pass normalized text so that whitespace-only differences
    between two fetches of the same instrument collapse to one hash.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_text(text: str, config: ChunkConfig | None = None) -> list[str]:
    """
    Split text into overlapping fixed-size windows.

    Each window is ``text[start:start + size]`` and the next window starts
    ``size - overlap`` characters later; the window that reaches the end of
    the text is the last one. Taking ``chunk[:size - overlap]`` of every
    window but the last, plus the whole last window, gives back the
    original text.

    Args:
        text: Normalized instrument text
        config: Window size and overlap (defaults to 1000/150)

    Returns:
        Ordered list of chunk strings (empty for empty text)
    """
    config = config or ChunkConfig()
    size = config.chunk_size
    step = size - config.chunk_overlap

    chunks = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + size, length)
        chunks.append(text[start:end])
        if end >= length:
            break
        start += step

    logger.debug(f"Chunked {length} chars into {len(chunks)} windows (size={size}, step={step})")
    return chunks


def expected_chunk_count(length: int, config: ChunkConfig | None = None) -> int:
    """Number of windows ``chunk_text`` produces for a text of ``length`` chars."""
    config = config or ChunkConfig()
    if length <= 0:
        return 0
    if length <= config.chunk_size:
        return 1
    step = config.chunk_size - config.chunk_overlap
    return -(-(length - config.chunk_overlap) // step)
