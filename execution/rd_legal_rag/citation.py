"""
Citation and Context Formatting for VIGENTE Chunks

Builds the evidence blocks shown to models:

- normal mode groups chunks under one "[Versión verificada]" header per
  instrument version;
- max-reliability mode prefixes every chunk with
  ``[Fuente #i | instrumento | versión | chunk_index: n | url]`` so the
  model can cite (source_url, chunk_index) pairs.

Also renders the "Fuentes verificadas" block and probe previews.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from .corpus_store import ChunkCitation, VigenteChunk

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_CHARS = 12000
VERIFIED_SOURCES_FOOTER = "Solo estas fuentes cuentan como verificadas."
NO_SOURCES_NOTE = "**Nota:** No encontré fuentes vigentes para citar artículos específicos."

_SOURCE_HEADER = re.compile(r"^\[[\s\S]*?\]\n")


def citation_key(citation: ChunkCitation) -> str:
    """Identity of a version as shown to users: ``title|source_url|published_date``."""
    return f"{citation.title or ''}|{citation.source_url or ''}|{citation.published_date or ''}"


def unique_citations(chunks: list[VigenteChunk]) -> list[ChunkCitation]:
    """Citations of ``chunks`` in first-seen order, one per version."""
    seen: set[str] = set()
    citations = []
    for chunk in chunks:
        key = citation_key(chunk.citation)
        if key in seen:
            continue
        seen.add(key)
        citations.append(chunk.citation)
    return citations


@dataclass
class FormattedContext:
    """Prompt context plus the citations it contains."""
    text: str
    citations: list[ChunkCitation]


@dataclass
class ReliabilityContext:
    """Max-reliability context and the raw chunk text used by claim checks."""
    context_text: str
    all_chunk_text: str


def _version_header(citation: ChunkCitation) -> str:
    lines = [
        "[Versión verificada]",
        f"Instrumento: {citation.title or ''}",
        f"Tipo / Número: {citation.type or ''} {citation.number or ''}".strip(),
        f"Fecha promulgación (published_date): {citation.published_date or ''}",
    ]
    if citation.effective_date:
        lines.append(f"Fecha efectividad (effective_date): {citation.effective_date}")
    lines.append(f"URL: {citation.source_url or ''}")
    if citation.gazette_ref:
        lines.append(f"Gaceta / referencia: {citation.gazette_ref}")
    return "\n".join(lines)


def format_vigente_context(
    chunks: list[VigenteChunk],
    max_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
) -> FormattedContext:
    """
    Group chunks by version under a verified-metadata header.

    Args:
        chunks: Retrieved chunks, in ranking order
        max_chars: Hard cap on the returned text

    Returns:
        FormattedContext (empty text and citations for no chunks)
    """
    if not chunks:
        return FormattedContext(text="", citations=[])

    parts = []
    current_key: Optional[str] = None
    for chunk in chunks:
        key = citation_key(chunk.citation)
        if key != current_key:
            current_key = key
            parts.append(_version_header(chunk.citation))
            parts.append("---")
        parts.append(chunk.chunk_text)

    text = "\n\n".join(parts) + f"\n\n{VERIFIED_SOURCES_FOOTER}"
    return FormattedContext(text=text[:max_chars], citations=unique_citations(chunks))


def format_reliability_context(
    chunks: list[VigenteChunk],
    max_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
) -> ReliabilityContext:
    """Number every chunk with a citable header for the researcher model."""
    if not chunks:
        return ReliabilityContext(context_text="", all_chunk_text="")

    parts = []
    for i, chunk in enumerate(chunks, 1):
        cit = chunk.citation
        header = (
            f"[Fuente #{i} | {cit.title or ''} | {cit.published_date or ''} | "
            f"chunk_index: {chunk.chunk_index} | {cit.source_url or ''}]"
        )
        parts.append(f"{header}\n{chunk.chunk_text}")

    full = "\n\n---\n\n".join(parts)
    all_text = "\n".join(_SOURCE_HEADER.sub("", p, count=1) for p in parts)
    return ReliabilityContext(context_text=full[:max_chars], all_chunk_text=all_text)


def format_sources_block(citations: list[ChunkCitation]) -> str:
    """The "Fuentes verificadas" footer, or the no-sources note."""
    if not citations:
        return NO_SOURCES_NOTE
    lines = [
        f"- {c.title or ''} | {c.published_date or ''} | {c.status or ''} | {c.source_url or ''}"
        for c in citations
    ]
    return "---\n**Fuentes verificadas:**\n" + "\n".join(lines)


def preview(text: str, length: int = 200) -> str:
    """First ``length`` characters, with an ellipsis when cut."""
    text = text or ""
    return text[:length] + ("…" if len(text) > length else "")


def source_entry(chunk: VigenteChunk, preview_len: int = 200) -> dict:
    """Chat-response source entry for one chunk."""
    entry = {
        "title": chunk.citation.title,
        "source_url": chunk.citation.source_url,
        "textPreview": preview(chunk.chunk_text, preview_len),
    }
    if chunk.similarity is not None:
        entry["similarity"] = chunk.similarity
    return entry


def probe_entry(chunk: VigenteChunk, preview_len: int = 200) -> dict:
    """Probe-endpoint entry for one chunk."""
    return {
        "title": chunk.citation.title,
        "source_url": chunk.citation.source_url,
        "canonical_key": chunk.citation.canonical_key,
        "chunk_index": chunk.chunk_index,
        "similarity": chunk.similarity,
        "textPreview": preview(chunk.chunk_text, preview_len),
    }
