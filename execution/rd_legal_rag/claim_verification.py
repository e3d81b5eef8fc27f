"""
Textual claim verification against retrieved chunk text.

Two independent checks run on an answer before it reaches the user:

1. Article mentions ("art. 12", "artículo 45") that do not occur in the
   chunk text are removed, sentence by sentence.
2. Sentences that make a legal assertion must either cite only references
   present in the chunks or share a 5-word phrase with them.

Matching is purely textual (lowercase, whitespace-collapsed).
"""

import re
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MIN_CLAIM_LENGTH = 15
PHRASE_WORDS = 5
MIN_PHRASE_CHARS = 12
MAX_LISTED_CLAIMS = 5
CLAIM_PREVIEW_CHARS = 80

_ARTICLE_PATTERNS = (
    re.compile(r"art\.?\s*\d+", re.IGNORECASE),
    re.compile(r"artículo?s?\s*\d+", re.IGNORECASE),
)
_LAW_REF = re.compile(r"ley\s*\d{2,3}-\d{2}", re.IGNORECASE)
_DECREE_REF = re.compile(r"decreto\s*\d{2,3}-\d{2}", re.IGNORECASE)
_LEGAL_TRIGGER = re.compile(
    r"(?:art\.?\s*\d+|artículo?s?\s*\d+|ley\s*\d{2,3}-\d{2}|decreto\s*\d{2,3}-\d{2}"
    r"|según|conforme\s+a?|establece|dispone|consagra|prevé|señala)",
    re.IGNORECASE,
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _contains_reference(haystack: str, reference: str) -> bool:
    """Substring match that does not let "artículo 9" match inside "artículo 99"."""
    return re.search(re.escape(reference) + r"(?!\d)", haystack) is not None


@dataclass
class ArticleStripResult:
    """Answer with unverified article sentences removed."""
    cleaned: str
    caveat: str = ""
    unverified: list[str] = field(default_factory=list)


@dataclass
class ClaimCheckResult:
    """Legal claims split by whether the chunk text supports them."""
    verified: list[str] = field(default_factory=list)
    unverified: list[str] = field(default_factory=list)
    caveat: str = ""


# =============================================================================
# Article-mention check
# =============================================================================

def extract_article_mentions(text: str) -> list[str]:
    """Distinct article mentions, lowercased and whitespace-normalized."""
    normalized = _WHITESPACE.sub(" ", text or "")
    mentions: list[str] = []
    for pattern in _ARTICLE_PATTERNS:
        for match in pattern.finditer(normalized):
            mention = _collapse(match.group(0).lower())
            if mention not in mentions:
                mentions.append(mention)
    return mentions


def unverified_article_mentions(answer: str, all_chunk_text: str) -> list[str]:
    mentions = extract_article_mentions(answer)
    if not mentions:
        return []
    chunk_lower = _collapse(all_chunk_text.lower())
    return [m for m in mentions if not _contains_reference(chunk_lower, m)]


def strip_unverified_articles(answer: str, all_chunk_text: str) -> ArticleStripResult:
    """
    Remove every sentence citing an article absent from the chunk text.

    Returns:
        ArticleStripResult; the answer is returned unchanged (and the caveat
        is empty) when every mention is present
    """
    unverified = unverified_article_mentions(answer, all_chunk_text)
    if not unverified:
        return ArticleStripResult(cleaned=answer)

    kept = []
    for sentence in _SENTENCE_SPLIT.split(answer):
        low = _collapse(sentence.lower())
        if any(_contains_reference(low, u) for u in unverified):
            continue
        kept.append(sentence)

    caveat = "No verificado en fuentes cargadas: " + ", ".join(unverified) + "."
    logger.info(f"Stripped sentences citing unverified articles: {unverified}")
    return ArticleStripResult(cleaned=_collapse(" ".join(kept)), caveat=caveat, unverified=unverified)


# =============================================================================
# General-claim check
# =============================================================================

def extract_legal_claims(answer: str) -> list[str]:
    """Sentences (≥15 chars) containing a legal trigger, deduplicated in order."""
    normalized = _collapse((answer or "").replace("\r\n", "\n").replace("\n", " "))
    claims: list[str] = []
    for sentence in _SENTENCE_SPLIT.split(normalized):
        sentence = sentence.strip()
        if len(sentence) < MIN_CLAIM_LENGTH:
            continue
        if _LEGAL_TRIGGER.search(sentence) and sentence not in claims:
            claims.append(sentence)
    return claims


def _reference_tokens(claim_lower: str) -> list[str]:
    refs = []
    for pattern in (*_ARTICLE_PATTERNS, _LAW_REF, _DECREE_REF):
        refs.extend(_collapse(m.group(0)) for m in pattern.finditer(claim_lower))
    return refs


def is_claim_supported(claim: str, all_chunk_text: str) -> bool:
    """
    A claim is supported when all its normative references appear in the
    chunks, or, having none, when a contiguous 5-word phrase (of words longer
    than one character, at least 12 chars) appears verbatim.
    """
    claim_lower = _collapse(claim.lower())
    chunk_lower = _collapse((all_chunk_text or "").lower())

    refs = _reference_tokens(claim_lower)
    if refs:
        return all(_contains_reference(chunk_lower, r) for r in refs)

    words = [w for w in claim_lower.split(" ") if len(w) > 1]
    for i in range(len(words) - PHRASE_WORDS + 1):
        phrase = " ".join(words[i:i + PHRASE_WORDS])
        if len(phrase) >= MIN_PHRASE_CHARS and phrase in chunk_lower:
            return True
    return False


def _claims_caveat(unverified: list[str]) -> str:
    if not unverified:
        return ""
    listed = [
        f'"{c[:CLAIM_PREVIEW_CHARS]}{"…" if len(c) > CLAIM_PREVIEW_CHARS else ""}"'
        for c in unverified[:MAX_LISTED_CLAIMS]
    ]
    return "Afirmaciones no verificadas en las fuentes cargadas: " + "; ".join(listed)


def verify_answer_claims(answer: str, all_chunk_text: str) -> ClaimCheckResult:
    """Check every legal claim of ``answer`` against the chunk text."""
    result = ClaimCheckResult()
    for claim in extract_legal_claims(answer):
        if is_claim_supported(claim, all_chunk_text):
            result.verified.append(claim)
        else:
            result.unverified.append(claim)
    result.caveat = _claims_caveat(result.unverified)
    if result.unverified:
        logger.info(f"{len(result.unverified)}/{len(result.verified) + len(result.unverified)} claims unverified")
    return result
