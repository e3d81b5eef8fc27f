"""
Judge step of the max-reliability pipeline.

Parses the researcher's JSON answer, validates and clamps every field,
drops citations whose source_url was not in the retrieved context, and
decides the early exits (clarify / enrichment).

The model must emit exactly this object (optionally inside one fenced
code block):

    {decision, confidence, answer, missing_info_questions, caveats,
     next_steps, citations: [{instrument, type, number, published_date,
     status, source_url, chunk_index}]}
"""

import re
import json
import math
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

DECISION_APPROVE = "APPROVE"
DECISION_NEED_MORE_INFO = "NEED_MORE_INFO"
DECISION_NO_EVIDENCE = "NO_EVIDENCE"
DECISION_UNVERIFIED_CITATION = "UNVERIFIED_CITATION"
DECISIONS = (
    DECISION_APPROVE,
    DECISION_NEED_MORE_INFO,
    DECISION_NO_EVIDENCE,
    DECISION_UNVERIFIED_CITATION,
)

EXIT_CLARIFY = "clarify"
EXIT_ENRICHMENT = "enrichment"

MAX_QUESTIONS = 4
MAX_CAVEATS = 5
MAX_NEXT_STEPS = 5
MIN_CONFIDENCE = 0.5
DEFAULT_CONFIDENCE = 0.5

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

FALLBACK_PAYLOAD = {
    "decision": DECISION_NO_EVIDENCE,
    "confidence": 0.85,
    "answer": "La respuesta del modelo no fue JSON válido. No se emite criterio para evitar errores.",
    "missing_info_questions": [],
    "caveats": ["Salida del modelo inválida; no se usó."],
    "next_steps": ["Reformula la consulta o intenta de nuevo."],
    "citations": [],
}


def _loads(text: str) -> Optional[dict]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json(raw: str) -> Optional[dict]:
    """Parse a JSON object, tolerating a single fenced code block around it."""
    trimmed = (raw or "").strip()
    match = _CODE_BLOCK.fullmatch(trimmed)
    candidate = match.group(1).strip() if match else trimmed
    return _loads(candidate) or _loads(trimmed)


@dataclass
class JudgeCitation:
    """A citation the model emitted, after validation."""
    instrument: str
    source_url: str
    chunk_index: int
    type: Optional[str] = None
    number: Optional[str] = None
    published_date: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_dict(cls, data) -> Optional["JudgeCitation"]:
        """Build from a model-emitted object; None when required keys are missing."""
        if not isinstance(data, dict):
            return None
        if not all(k in data for k in ("instrument", "source_url", "chunk_index")):
            return None
        try:
            chunk_index = int(data["chunk_index"])
        except (TypeError, ValueError):
            return None
        return cls(
            instrument=str(data.get("instrument") or ""),
            source_url=str(data.get("source_url") or "").strip(),
            chunk_index=chunk_index,
            type=data.get("type"),
            number=data.get("number"),
            published_date=data.get("published_date"),
            status=data.get("status"),
        )

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "type": self.type,
            "number": self.number,
            "published_date": self.published_date,
            "status": self.status,
            "source_url": self.source_url,
            "chunk_index": self.chunk_index,
        }


@dataclass
class JudgeResult:
    """Validated researcher output and the exit it implies."""
    decision: str
    confidence: float
    answer: str
    missing_info: list[str] = field(default_factory=list)
    caveats: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    citations: list[JudgeCitation] = field(default_factory=list)
    exit: Optional[str] = None  # "clarify" | "enrichment" | None
    parsed: bool = True


def _string_list(value, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)][:limit]


def _confidence(value) -> float:
    # bool is an int subclass; a boolean confidence is not numeric here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CONFIDENCE
    if math.isnan(value):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def run_judge_step(model_raw: str, allowed_source_urls: set[str]) -> JudgeResult:
    """
    Validate the researcher output against the retrieved evidence.

    Args:
        model_raw: Raw text returned by the researcher model
        allowed_source_urls: source_url values present in the context

    Returns:
        JudgeResult; ``exit`` is "clarify" for NEED_MORE_INFO and
        "enrichment" for NO_EVIDENCE or confidence below 0.5
    """
    parsed = extract_json(model_raw)
    was_parsed = parsed is not None
    if parsed is None:
        logger.warning(f"Judge: model output is not JSON ({(model_raw or '')[:80]!r}); using fallback")
        parsed = dict(FALLBACK_PAYLOAD)

    decision = parsed.get("decision")
    if decision not in DECISIONS:
        decision = DECISION_NO_EVIDENCE

    answer = parsed.get("answer")
    raw_citations = parsed.get("citations") if isinstance(parsed.get("citations"), list) else []
    citations = [c for c in (JudgeCitation.from_dict(item) for item in raw_citations) if c is not None]

    allowed = {u.strip() for u in allowed_source_urls}
    kept = [c for c in citations if c.source_url in allowed]
    if len(kept) < len(citations):
        logger.info(f"Judge: dropped {len(citations) - len(kept)} citation(s) outside the retrieved context")

    result = JudgeResult(
        decision=decision,
        confidence=_confidence(parsed.get("confidence")),
        answer=answer if isinstance(answer, str) else "",
        missing_info=_string_list(parsed.get("missing_info_questions"), MAX_QUESTIONS),
        caveats=_string_list(parsed.get("caveats"), MAX_CAVEATS),
        next_steps=_string_list(parsed.get("next_steps"), MAX_NEXT_STEPS),
        citations=kept,
        parsed=was_parsed,
    )

    if result.decision == DECISION_NEED_MORE_INFO:
        result.exit = EXIT_CLARIFY
    elif result.decision == DECISION_NO_EVIDENCE or result.confidence < MIN_CONFIDENCE:
        result.exit = EXIT_ENRICHMENT

    logger.info(f"Judge: decision={result.decision} confidence={result.confidence:.2f} exit={result.exit}")
    return result
