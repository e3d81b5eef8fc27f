"""
Canonical identity of Dominican legal instruments.

Maps a document title (and source URL) to a stable canonical key such as
``LEY-41-08``, ``DECRETO-123-45`` or ``CONSTITUCION-RD``, and provides the
heuristics used to date a document when no authoritative date is given.
"""

import re
import logging
from datetime import date
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

CONSTITUTION_KEY = "CONSTITUCION-RD"
FALLBACK_KEY = "CONSULTORIA"

_NUMBER = r"(\d{2,3}-\d{2})"
_NUMBER_PREFIX = r"(?:N(?:o|º|°|úm|um)?\.?\s*)?"

_CONSTITUTION_PATTERN = re.compile(r"constituci[oó]n", re.IGNORECASE)
_DECRETO_PATTERN = re.compile(rf"Decreto\s*{_NUMBER_PREFIX}{_NUMBER}", re.IGNORECASE)
_RESOLUCION_PATTERN = re.compile(rf"Resoluci[oó]n\s*{_NUMBER_PREFIX}{_NUMBER}", re.IGNORECASE)
_LEY_PATTERN = re.compile(rf"Ley\s*{_NUMBER_PREFIX}{_NUMBER}", re.IGNORECASE)

# Queries name laws far less formally than titles do ("la ley 41-08")
_ASKED_LAW_PATTERN = re.compile(rf"\bley\s*{_NUMBER_PREFIX}{_NUMBER}", re.IGNORECASE)

_YEAR_PATTERN = re.compile(r"(\d{4})")
MIN_PLAUSIBLE_YEAR = 1990
MAX_PLAUSIBLE_YEAR = 2030


@dataclass(frozen=True)
class CanonicalInfo:
    """Canonical key, instrument type and number derived for a document."""
    canonical_key: str
    type: str
    number: Optional[str] = None


def derive_canonical(title: str, url: str = "") -> CanonicalInfo:
    """
    Derive the canonical identity of an instrument.

    Precedence: a Constitution mention in title or URL wins over any
    number-like substring, then Decreto, Resolución and Ley numbers. Titles
    without a recognizable pattern fall back to an uppercased slug of their
    first 60 characters.

    Args:
        title: Human title of the document
        url: Source URL (only consulted for the Constitution check)

    Returns:
        CanonicalInfo with key, type and optional number
    """
    title = title or ""
    url = url or ""

    if _CONSTITUTION_PATTERN.search(title) or _CONSTITUTION_PATTERN.search(url):
        return CanonicalInfo(CONSTITUTION_KEY, "constitucion", None)

    for pattern, prefix, kind in (
        (_DECRETO_PATTERN, "DECRETO", "decreto"),
        (_RESOLUCION_PATTERN, "RESOLUCION", "resolucion"),
        (_LEY_PATTERN, "LEY", "ley"),
    ):
        match = pattern.search(title)
        if match:
            number = match.group(1)
            return CanonicalInfo(f"{prefix}-{number}", kind, number)

    return CanonicalInfo(_slugify(title), "ley", None)


def _slugify(title: str) -> str:
    slug = re.sub(r"\s+", "-", title.strip()[:60])
    slug = re.sub(r"[^a-zA-Z0-9-]", "", slug)
    return (slug or FALLBACK_KEY).upper()


def extract_published_date(
    text: str,
    description: str = "",
    today: Optional[date] = None,
) -> str:
    """
    Guess a published date from the years mentioned in a document.

    Takes the latest 4-digit year in [1990, 2030] found in the text or
    description and returns January 1st of it. When no plausible year is
    present, returns today's date. This is a weak heuristic; loaders accept
    an explicit date that overrides it.
    """
    years = [
        int(y) for y in _YEAR_PATTERN.findall(f"{text or ''} {description or ''}")
        if MIN_PLAUSIBLE_YEAR <= int(y) <= MAX_PLAUSIBLE_YEAR
    ]
    if years:
        return f"{max(years)}-01-01"
    return (today or date.today()).isoformat()


def asked_canonical_key(query: str) -> Optional[str]:
    """Return ``LEY-NNN-NN`` when the query names a specific law, else None."""
    match = _ASKED_LAW_PATTERN.search(query or "")
    if not match:
        return None
    return f"LEY-{match.group(1)}"


def asked_law_number(query: str) -> Optional[str]:
    """Return the bare ``NNN-NN`` number of a law named in the query."""
    match = _ASKED_LAW_PATTERN.search(query or "")
    return match.group(1) if match else None


def mentions_law(text: str, number: str) -> bool:
    """True when ``text`` mentions ``Ley <number>`` (case and spacing insensitive)."""
    if not text or not number:
        return False
    pattern = re.compile(rf"\bley\s*{_NUMBER_PREFIX}{re.escape(number)}\b", re.IGNORECASE)
    return bool(pattern.search(text))
