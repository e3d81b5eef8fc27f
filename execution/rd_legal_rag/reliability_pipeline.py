"""
Max-reliability pipeline: Researcher -> Judge -> Claim verification -> Payload.

Each step is a plain function so it can be tested on its own; the
``MaxReliabilityPipeline`` class wires them together and returns one of
three outcomes:

- clarify(questions): the model needs more facts from the user;
- enrichment: the evidence is insufficient, defer to the enrichment queue;
- answer(payload): a disclaimer-wrapped answer with verified sources.

The steps within one request run strictly in sequence.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .citation import (
    ReliabilityContext,
    format_reliability_context,
    format_sources_block,
    unique_citations,
)
from .claim_verification import strip_unverified_articles, verify_answer_claims
from .corpus_store import ChunkCitation, VigenteChunk
from .guardrails import (
    DISCLAIMER_PREFIX,
    INSUFFICIENT_ANSWER_MESSAGE,
    MAX_RELIABILITY_DISCLAIMER,
    MODE_MAX_RELIABILITY,
    clarify_fallback_questions,
)
from .judge import (
    DECISION_UNVERIFIED_CITATION,
    EXIT_CLARIFY,
    EXIT_ENRICHMENT,
    MAX_QUESTIONS,
    JudgeResult,
    run_judge_step,
)
from .language_patterns import NO_SOURCES_PHRASE, NO_SOURCES_SENTENCE

logger = logging.getLogger(__name__)

MIN_ANSWER_CHARS = 80
ARTICLE_CHECK_CONFIDENCE = 0.6
CLAIM_CHECK_CONFIDENCE_CAP = 0.65

OUTCOME_CLARIFY = "clarify"
OUTCOME_ENRICHMENT = "enrichment"
OUTCOME_ANSWER = "answer"

CallModel = Callable[[str, str], str]


# =============================================================================
# Step 1: Researcher
# =============================================================================

def run_researcher_step(system_prompt: str, user_prompt: str, call_model: CallModel) -> str:
    """Call the researcher model and return its raw text. No parsing."""
    return call_model(system_prompt, user_prompt)


def build_researcher_user_prompt(query: str, context_text: str, history_text: str = "") -> str:
    """User prompt for the researcher: question, optional history and numbered sources."""
    parts = [f"Consulta (general):\n{query}"]
    if history_text:
        parts.append(f"Contexto previo:\n{history_text}")
    parts.append(f"Fuentes vigentes verificadas:\n{context_text or '(sin fuentes)'}")
    parts.append("Devuelve SOLO el objeto JSON con el schema indicado.")
    return "\n\n".join(parts)


# =============================================================================
# Step 3: Claim verification
# =============================================================================

@dataclass
class ClaimVerificationOutcome:
    """Answer after both textual checks, with the adjusted decision/confidence."""
    answer: str
    decision: str
    confidence: float
    caveats: list[str] = field(default_factory=list)


def run_claim_verification_step(
    answer: str,
    all_chunk_text: str,
    decision: str,
    confidence: float,
    caveats: Optional[list[str]] = None,
) -> ClaimVerificationOutcome:
    """
    Apply the article-mention check, then the general-claim check.

    The checks are cumulative: an answer can be trimmed by the first and
    still flagged by the second.
    """
    caveats = list(caveats or [])
    notes = []

    stripped = strip_unverified_articles(answer, all_chunk_text)
    if stripped.caveat:
        decision = DECISION_UNVERIFIED_CITATION
        confidence = ARTICLE_CHECK_CONFIDENCE
        notes.append(stripped.caveat)

    # Notes are appended afterwards so the claim check never sees them
    claims = verify_answer_claims(stripped.cleaned, all_chunk_text)
    if claims.caveat:
        decision = DECISION_UNVERIFIED_CITATION
        confidence = min(confidence, CLAIM_CHECK_CONFIDENCE_CAP)
        notes.append(claims.caveat)

    caveats.extend(notes)
    out_answer = stripped.cleaned
    for note in notes:
        out_answer = f"{out_answer}\n\n**Nota:** {note}"

    return ClaimVerificationOutcome(
        answer=out_answer, decision=decision, confidence=confidence, caveats=caveats,
    )


# =============================================================================
# Step 4: Payload assembly
# =============================================================================

@dataclass
class ReliabilityPayload:
    """Final max-reliability answer."""
    content: str
    answer: str
    decision: str
    confidence: float
    questions: list[str] = field(default_factory=list)
    caveats: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    citations: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": "answer",
            "content": self.content,
            "mode": MODE_MAX_RELIABILITY,
            "ok": True,
            "decision": self.decision,
            "answer": self.answer,
            "questions": self.questions,
            "confidence": self.confidence,
            "caveats": self.caveats,
            "next_steps": self.next_steps,
            "citations": self.citations,
        }


def strip_no_sources_phrases(answer: str) -> str:
    """Remove stale "no encontré fuentes…" boilerplate."""
    if not NO_SOURCES_PHRASE.search(answer):
        return answer
    cleaned = NO_SOURCES_SENTENCE.sub(" ", answer)
    return " ".join(cleaned.split()).strip()


def _citation_dict(citation: ChunkCitation) -> dict:
    return {
        "title": citation.title or "",
        "source_url": citation.source_url or "",
        "published_date": citation.published_date or "",
        "status": citation.status or "",
    }


def assemble_payload(
    post_check: ClaimVerificationOutcome,
    judge: JudgeResult,
    chunks: list[VigenteChunk],
    disclaimer_prefix: str = DISCLAIMER_PREFIX,
    reliability_disclaimer: str = MAX_RELIABILITY_DISCLAIMER,
) -> ReliabilityPayload:
    """
    Wrap the verified answer with the disclaimers and the sources block.

    Args:
        post_check: Output of the claim-verification step
        judge: Output of the judge step (questions, next steps, citations)
        chunks: Retrieved chunks; their unique citations form the sources block

    Returns:
        ReliabilityPayload
    """
    answer = post_check.answer
    if chunks:
        answer = strip_no_sources_phrases(answer)
    if len(answer.strip()) < MIN_ANSWER_CHARS:
        answer = INSUFFICIENT_ANSWER_MESSAGE

    citations = unique_citations(chunks)
    body = f"{reliability_disclaimer}\n\n{answer}\n\n{format_sources_block(citations)}"

    if citations:
        payload_citations = [_citation_dict(c) for c in citations]
    else:
        payload_citations = [
            {
                "title": c.instrument,
                "source_url": c.source_url,
                "published_date": c.published_date or "",
                "status": c.status or "",
            }
            for c in judge.citations
        ]

    return ReliabilityPayload(
        content=disclaimer_prefix + body,
        answer=body,
        decision=post_check.decision,
        confidence=post_check.confidence,
        questions=judge.missing_info,
        caveats=post_check.caveats,
        next_steps=judge.next_steps,
        citations=payload_citations,
    )


# =============================================================================
# Orchestration
# =============================================================================

@dataclass
class PipelineOutcome:
    """One of: clarify(questions), enrichment, answer(payload)."""
    kind: str
    questions: list[str] = field(default_factory=list)
    payload: Optional[ReliabilityPayload] = None
    judge: Optional[JudgeResult] = None

    @classmethod
    def clarify(cls, questions: list[str], judge: Optional[JudgeResult] = None) -> "PipelineOutcome":
        return cls(kind=OUTCOME_CLARIFY, questions=questions, judge=judge)

    @classmethod
    def enrichment(cls, judge: Optional[JudgeResult] = None) -> "PipelineOutcome":
        return cls(kind=OUTCOME_ENRICHMENT, judge=judge)

    @classmethod
    def answer(cls, payload: ReliabilityPayload, judge: Optional[JudgeResult] = None) -> "PipelineOutcome":
        return cls(kind=OUTCOME_ANSWER, payload=payload, judge=judge)


class MaxReliabilityPipeline:
    """
    Researcher -> Judge -> (clarify | enrichment | Claim verification -> Payload).

    The researcher call is injected (``call_model(system, user) -> str``) so
    any provider, or a fake, can stand behind it.
    """

    def __init__(
        self,
        disclaimer_prefix: str = DISCLAIMER_PREFIX,
        reliability_disclaimer: str = MAX_RELIABILITY_DISCLAIMER,
    ):
        self.disclaimer_prefix = disclaimer_prefix
        self.reliability_disclaimer = reliability_disclaimer

    @staticmethod
    def build_context(chunks: list[VigenteChunk], max_chars: int = 12000) -> ReliabilityContext:
        return format_reliability_context(chunks, max_chars)

    def run(
        self,
        chunks: list[VigenteChunk],
        system_prompt: str = "",
        user_prompt: str = "",
        call_model: Optional[CallModel] = None,
        initial_model_raw: Optional[str] = None,
        all_chunk_text: Optional[str] = None,
    ) -> PipelineOutcome:
        """
        Run the pipeline for one query.

        Args:
            chunks: Retrieved VIGENTE chunks (the evidence)
            system_prompt: Researcher system prompt
            user_prompt: Researcher user prompt
            call_model: Researcher call, used unless ``initial_model_raw`` is given
            initial_model_raw: Researcher output already obtained by the caller
            all_chunk_text: Concatenated chunk text (derived from chunks if omitted)

        Returns:
            PipelineOutcome
        """
        if initial_model_raw is not None:
            model_raw = initial_model_raw
        elif call_model is not None:
            model_raw = run_researcher_step(system_prompt, user_prompt, call_model)
        else:
            raise ValueError("Either call_model or initial_model_raw is required")

        allowed = {c.citation.source_url.strip() for c in chunks if c.citation.source_url}
        judge = run_judge_step(model_raw, allowed)

        if judge.exit == EXIT_CLARIFY:
            questions = judge.missing_info or clarify_fallback_questions(MODE_MAX_RELIABILITY)
            return PipelineOutcome.clarify(questions[:MAX_QUESTIONS], judge)

        if judge.exit == EXIT_ENRICHMENT:
            return PipelineOutcome.enrichment(judge)

        if all_chunk_text is None:
            all_chunk_text = self.build_context(chunks).all_chunk_text

        post_check = run_claim_verification_step(
            judge.answer, all_chunk_text, judge.decision, judge.confidence, judge.caveats,
        )
        payload = assemble_payload(
            post_check,
            judge,
            chunks,
            disclaimer_prefix=self.disclaimer_prefix,
            reliability_disclaimer=self.reliability_disclaimer,
        )
        logger.info(
            f"Max-reliability answer: decision={payload.decision} "
            f"confidence={payload.confidence:.2f} sources={len(payload.citations)}"
        )
        return PipelineOutcome.answer(payload, judge)
