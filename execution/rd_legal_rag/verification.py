"""
Multi-model verification of enrichment candidates.

Before a document found on an official site is ingested, several
independent models are asked whether it is the instrument the user was
looking for and whether it is in force. Each answers YES or NO; the tally
is judged by an explicit ``VotePolicy``.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from .canonical import asked_law_number
from .llm_providers import AgentTask, ChatProvider, MODELS, build_providers, fan_out

logger = logging.getLogger(__name__)

MAX_TEXT_FOR_VERIFY = 12000
MAX_QUERY_FOR_VERIFY = 300

VOTE_YES = "yes"
VOTE_NO = "no"
VOTE_UNKNOWN = "unknown"


def normalize_yes_no(text: str) -> str:
    """Classify a model answer as "yes", "no" or "unknown"."""
    t = (text or "").strip().lower()[:50].strip()
    if t in ("yes", "si", "sí"):
        return VOTE_YES
    if t == "no":
        return VOTE_NO
    return VOTE_UNKNOWN


@dataclass(frozen=True)
class VotePolicy:
    """
    Threshold a verification tally must meet.

    Passes when at least ``min_responses`` models answered, at least
    ``min_yes_votes`` said yes and, with ``require_majority``, the yes votes
    are a strict majority of the models that answered.
    """
    min_responses: int = 1
    min_yes_votes: int = 1
    require_majority: bool = True

    @classmethod
    def from_env(cls) -> "VotePolicy":
        return cls(
            min_responses=max(1, int(os.getenv("ENRICH_MIN_RESPONSES", "1"))),
            min_yes_votes=max(1, int(os.getenv("ENRICH_MIN_YES_VOTES", "1"))),
            require_majority=os.getenv("ENRICH_REQUIRE_MAJORITY", "true").lower() not in ("false", "0"),
        )

    def passes(self, yes_votes: int, responded: int) -> bool:
        if responded < self.min_responses or yes_votes < self.min_yes_votes:
            return False
        if self.require_majority and yes_votes * 2 <= responded:
            return False
        return True


@dataclass
class VerificationResult:
    """Tally of a multi-model verification."""
    verified: bool
    votes: int
    total: int
    details: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"{self.votes}/{self.total} yes ({'; '.join(self.details) or 'no responses'})"


@dataclass
class Verifier:
    """One verifying model."""
    label: str
    provider: ChatProvider
    model: str


def build_verification_prompt(text: str, title: str, query: str) -> str:
    """YES/NO prompt shown to every verifying model."""
    excerpt = (text or "")[:MAX_TEXT_FOR_VERIFY]
    law = asked_law_number(query)
    law_line = f"Norma mencionada explícitamente en la consulta: Ley {law}\n" if law else ""
    return (
        "El siguiente texto es un fragmento de normativa de República Dominicana.\n"
        f"Título del documento: {title}\n"
        f"Consulta del usuario que motivó la búsqueda: {(query or '')[:MAX_QUERY_FOR_VERIFY]}\n"
        f"{law_line}"
        "\n"
        "Fragmento del texto:\n"
        "---\n"
        f"{excerpt}\n"
        "---\n"
        "\n"
        "¿Este texto corresponde a la norma correcta y a una versión vigente (no derogada) "
        'que es relevante para la consulta? Responde ÚNICAMENTE "YES" o "NO".'
    )


class MultiModelVerifier:
    """
    Asks several models to confirm a candidate document.

    Primary verifiers run in parallel. The backup verifier (xAI by default)
    is only consulted while fewer than two models have responded.
    """

    def __init__(
        self,
        verifiers: Optional[list[Verifier]] = None,
        backup: Optional[Verifier] = None,
        policy: Optional[VotePolicy] = None,
        timeout: float = 30.0,
    ):
        if verifiers is None:
            providers = build_providers()
            verifiers = [
                Verifier("Claude", providers["claude"], MODELS["claude_verify"]),
                Verifier("Groq", providers["groq"], MODELS["groq"]),
                Verifier("OpenAI", providers["openai"], MODELS["openai_fallback"]),
            ]
            if backup is None:
                backup = Verifier("xAI", providers["xai"], MODELS["xai_verify"])
        self.verifiers = verifiers
        self.backup = backup
        self.policy = policy or VotePolicy.from_env()
        self.timeout = timeout

    def _tasks(self, verifiers: list[Verifier], prompt: str) -> list[AgentTask]:
        return [
            AgentTask(
                agent=v.label,
                provider=v.provider,
                models=[v.model],
                system="",
                user=prompt,
                max_tokens=10,
                temperature=0.0,
                timeout=self.timeout,
            )
            for v in verifiers
            if v.provider.available
        ]

    def verify(self, text: str, title: str, query: str) -> VerificationResult:
        """
        Run the verification vote for one candidate.

        Args:
            text: Candidate document text
            title: Candidate title
            query: User query that triggered the search

        Returns:
            VerificationResult with per-model details
        """
        prompt = build_verification_prompt(text, title, query)
        details: list[str] = []
        yes = 0
        responded = 0

        def tally(results):
            nonlocal yes, responded
            for r in results:
                if r.ok:
                    responded += 1
                    vote = normalize_yes_no(r.content)
                    if vote == VOTE_YES:
                        yes += 1
                    details.append(f"{r.agent}: {vote}")
                else:
                    details.append(f"{r.agent}: error {r.error}")

        tally(fan_out(self._tasks(self.verifiers, prompt)))

        if responded < 2 and self.backup is not None:
            tally(fan_out(self._tasks([self.backup], prompt)))

        verified = self.policy.passes(yes, responded)
        result = VerificationResult(verified=verified, votes=yes, total=responded, details=details)
        logger.info(f"Verification of '{title[:80]}': {'PASS' if verified else 'FAIL'} {result.summary()}")
        return result
