"""
Chat guardrails: refusal, rejection, clarification and mode selection.

Only requests for illegal acts (forgery, tax evasion, step-by-step
instructions to commit a crime) or for personalized representation are
refused outright. Messages that carry personal data or ask for advice on
the user's own case are rejected with a request to rephrase
hypothetically. Ordinary legal questions are answered with a disclaimer.
"""

import re
import unicodedata
from typing import Optional

from .language_patterns import (
    BROAD_TOPIC_PATTERN,
    CLARIFY_FALLBACK_QUESTIONS,
    ILLEGAL_REQUEST_PATTERNS,
    MAX_RELIABILITY_ALIASES,
    MESSAGES,
    PERSONAL_ADVICE_TRIGGERS,
    PII_PATTERNS,
    RELIABILITY_FALLBACK_QUESTIONS,
)

MODE_NORMAL = "normal"
MODE_MAX_RELIABILITY = "max-reliability"

REFUSAL_MESSAGE = MESSAGES["refusal"]
REJECT_MESSAGE = MESSAGES["reject"]
DISCLAIMER_PREFIX = MESSAGES["disclaimer_prefix"]
MAX_RELIABILITY_DISCLAIMER = MESSAGES["max_reliability_disclaimer"]
DEFERRAL_MESSAGE = MESSAGES["deferral"]
INSUFFICIENT_ANSWER_MESSAGE = MESSAGES["insufficient_answer"]

MIN_REFUSAL_CHECK_LENGTH = 10
MIN_SPECIFIC_QUERY_LENGTH = 25

_WHITESPACE = re.compile(r"\s+")
_MODE_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_for_check(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip().lower()


def should_refuse_illegal(message: str) -> bool:
    """True when the message asks for illegal acts or guaranteed outcomes."""
    t = normalize_for_check(message)
    if len(t) < MIN_REFUSAL_CHECK_LENGTH:
        return False
    return any(p.search(t) for p in ILLEGAL_REQUEST_PATTERNS)


def pii_kinds(message: str) -> list[str]:
    """Names of the personal-data patterns found in the message."""
    return [name for name, pattern in PII_PATTERNS.items() if pattern.search(message or "")]


def looks_like_pii(message: str) -> bool:
    return bool(pii_kinds(message))


def asks_personal_advice(message: str) -> bool:
    t = (message or "").lower()
    return any(trigger in t for trigger in PERSONAL_ADVICE_TRIGGERS)


def should_reject(message: str) -> bool:
    """Personal data or case-specific advice: ask the user to rephrase hypothetically."""
    return looks_like_pii(message) or asks_personal_advice(message)


def needs_clarification(message: str) -> bool:
    """Very short messages, or a bare broad topic ("divorcio", "despido", ...)."""
    msg = _WHITESPACE.sub(" ", message or "").strip()
    if len(msg) < MIN_SPECIFIC_QUERY_LENGTH:
        return True
    return bool(BROAD_TOPIC_PATTERN.match(msg))


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_mode(mode: Optional[str]) -> str:
    """
    Map a free-form mode string to "max-reliability" or "normal".

    Lowercases, strips accents and collapses whitespace/underscore/hyphen
    runs to a single hyphen before matching the alias set.
    """
    if not mode:
        return MODE_NORMAL
    key = _strip_accents(mode.strip().lower())
    key = _MODE_SEPARATORS.sub("-", key).strip("-")
    return MODE_MAX_RELIABILITY if key in MAX_RELIABILITY_ALIASES else MODE_NORMAL


def clarify_fallback_questions(mode: str = MODE_NORMAL) -> list[str]:
    """Generic questions used when no model questions are available."""
    if mode == MODE_MAX_RELIABILITY:
        return list(RELIABILITY_FALLBACK_QUESTIONS)
    return list(CLARIFY_FALLBACK_QUESTIONS)
