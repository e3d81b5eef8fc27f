"""
Chat orchestration for both answer modes.

Normal mode:
    guardrails -> clarification heuristic -> VIGENTE retrieval (best effort)
    -> parallel investigation by several providers -> Claude synthesis
    (with provider fallbacks) -> answer with note.

Max-reliability mode:
    guardrails -> retrieval -> sufficiency gate (enqueue + deferral)
    -> researcher model chain -> judge -> claim verification -> payload.

Every path resolves to one of three response shapes: answer, clarify or
reject. Provider errors are logged, never shown to the user.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from .citation import format_reliability_context, format_vigente_context, source_entry
from .enrichment import enqueue_for_enrichment
from .guardrails import (
    DEFERRAL_MESSAGE,
    DISCLAIMER_PREFIX,
    MODE_MAX_RELIABILITY,
    MODE_NORMAL,
    REFUSAL_MESSAGE,
    REJECT_MESSAGE,
    clarify_fallback_questions,
    needs_clarification,
    normalize_mode,
    should_refuse_illegal,
    should_reject,
)
from .language_patterns import DISCLAIMER_HARD_RULES, LLM_PROMPTS, MESSAGES, busqueda_prompt
from .llm_providers import (
    MODELS,
    AgentTask,
    AllProvidersFailedError,
    ChainStep,
    ChatProvider,
    ModelChain,
    build_providers,
    fan_out,
)
from .metrics import get_metrics_collector
from .reliability_pipeline import (
    OUTCOME_CLARIFY,
    OUTCOME_ENRICHMENT,
    MaxReliabilityPipeline,
    build_researcher_user_prompt,
)
from .retriever import RetrievalResult

logger = logging.getLogger(__name__)

ROLE_LABELS = {"user": "Usuario", "assistant": "Asistente"}


@dataclass
class OrchestratorConfig:
    """Limits and budgets for chat orchestration."""
    total_agents: int = 5
    agent_timeout: float = 45.0
    agent_max_tokens: int = 1800
    synthesis_max_tokens: int = 8192
    synthesis_timeout: float = 90.0
    fallback_timeout: float = 45.0
    clarifier_max_tokens: int = 300
    clarifier_timeout: float = 20.0
    max_clarify_questions: int = 3

    # Researcher chain: primary, narrower context with shorter deadline, alternate provider
    researcher_timeout: float = 60.0
    researcher_retry_timeout: float = 30.0
    researcher_narrow_context_chars: int = 6000
    researcher_max_tokens: int = 2000
    context_max_chars: int = 12000

    history_messages: int = 10
    history_max_chars: int = 2000
    topic_max_chars: int = 180
    agent_result_chars: int = 4000
    fallback_result_chars: int = 3000


@dataclass
class ChatTurn:
    """One previous message of the conversation."""
    role: str
    content: str


@dataclass
class ChatResponse:
    """answer | clarify | reject, plus the HTTP status to send it with."""
    type: str
    content: Optional[str] = None
    note: Optional[str] = None
    sources: Optional[list[dict]] = None
    questions: Optional[list[str]] = None
    message: Optional[str] = None
    reliability: Optional[dict] = None
    status_code: int = 200

    @classmethod
    def answer(cls, content: str, note: Optional[str] = None, sources=None, reliability=None) -> "ChatResponse":
        return cls(type="answer", content=content, note=note, sources=sources or None, reliability=reliability)

    @classmethod
    def clarify(cls, questions: list[str]) -> "ChatResponse":
        return cls(type="clarify", questions=questions)

    @classmethod
    def reject(cls, message: str, status_code: int = 200) -> "ChatResponse":
        return cls(type="reject", message=message, status_code=status_code)

    def to_dict(self) -> dict:
        if self.type == "clarify":
            return {"type": "clarify", "questions": self.questions or []}
        if self.type == "reject":
            return {"type": "reject", "message": self.message or ""}
        data = {"type": "answer", "content": self.content or ""}
        if self.note:
            data["note"] = self.note
        if self.sources:
            data["sources"] = self.sources
        if self.reliability:
            data["reliability"] = self.reliability
        return data


def truncate(text: str, max_chars: int = 2500) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}…"


def format_history(history: Optional[list], max_messages: int = 10, max_chars: int = 2000) -> str:
    """Last ``max_messages`` turns as "Usuario: …" / "Asistente: …" lines."""
    if not history:
        return ""
    lines = []
    for turn in history[-max_messages:]:
        role = turn.role if isinstance(turn, ChatTurn) else turn.get("role", "user")
        content = turn.content if isinstance(turn, ChatTurn) else turn.get("content", "")
        lines.append(f"{ROLE_LABELS.get(role, 'Usuario')}: {content}")
    return truncate("\n".join(lines), max_chars)


def parse_clarifier_questions(raw: str, limit: int = 3) -> list[str]:
    """Questions from the clarifier's ``{"questions": [...]}`` JSON, or [] if unusable."""
    try:
        parsed = json.loads((raw or "").strip())
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, dict) or not isinstance(parsed.get("questions"), list):
        return []
    questions = [" ".join(q.split()) for q in parsed["questions"] if isinstance(q, str)]
    return [q for q in questions if q][:limit]


class ChatOrchestrator:
    """
    Handles one chat request end to end.

    Collaborators (retriever, corpus store, providers, reliability pipeline)
    are injected so tests can run against in-memory fakes.
    """

    def __init__(
        self,
        retriever,
        store,
        providers: Optional[dict[str, ChatProvider]] = None,
        pipeline: Optional[MaxReliabilityPipeline] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        """
        Args:
            retriever: VigenteRetriever (or compatible)
            store: Corpus store used to enqueue enrichment work
            providers: Provider clients by name (defaults to build_providers())
            pipeline: Max-reliability pipeline
            config: Orchestration limits
        """
        self.retriever = retriever
        self.store = store
        self.providers = providers if providers is not None else build_providers()
        self.pipeline = pipeline or MaxReliabilityPipeline()
        self.config = config or OrchestratorConfig()

    # =========================================================================
    # Entry point
    # =========================================================================

    def handle(
        self,
        message: str,
        history: Optional[list] = None,
        user_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> ChatResponse:
        """
        Answer one chat message.

        Args:
            message: User question
            history: Previous turns (ChatTurn or {"role", "content"} dicts)
            user_id: Caller id (only logged)
            mode: Free-form mode string, normalized against the alias set

        Returns:
            ChatResponse
        """
        message = (message or "").strip()
        if not message:
            return ChatResponse.reject(REJECT_MESSAGE, status_code=400)

        if should_refuse_illegal(message):
            logger.info("Refused request for illegal acts")
            return ChatResponse.reject(REFUSAL_MESSAGE)

        if should_reject(message):
            logger.info("Rejected message with personal data or case-specific advice")
            return ChatResponse.reject(REJECT_MESSAGE)

        resolved_mode = normalize_mode(mode)
        history_text = format_history(history, self.config.history_messages, self.config.history_max_chars)
        logger.info(f"Chat request (mode={resolved_mode}, user={user_id or 'anon'}): {message[:80]}")

        with get_metrics_collector().track_chat(resolved_mode, message) as tracker:
            if resolved_mode == MODE_MAX_RELIABILITY:
                response, outcome, chunks = self._handle_max_reliability(message, history_text)
            else:
                response, outcome, chunks = self._handle_normal(message, history_text)
            tracker.set_outcome(outcome, chunks_count=chunks)
        return response

    # =========================================================================
    # Helpers
    # =========================================================================

    def _provider(self, name: str) -> ChatProvider:
        return self.providers[name]

    def _retrieve(self, message: str) -> RetrievalResult:
        try:
            return self.retriever.retrieve(message)
        except Exception as e:
            logger.warning(f"Retrieval failed, continuing without evidence: {type(e).__name__}: {e}")
            return RetrievalResult(chunks=[])

    def _sources(self, result: RetrievalResult) -> list[dict]:
        preview_len = getattr(getattr(self.retriever, "config", None), "preview_len", 200)
        return [source_entry(c, preview_len) for c in result.chunks]

    def _defer(self, message: str, mode: str, result: RetrievalResult) -> ChatResponse:
        enqueue_for_enrichment(self.store, message, mode)
        return ChatResponse.answer(
            DISCLAIMER_PREFIX + DEFERRAL_MESSAGE,
            note="enrichment",
            sources=self._sources(result),
        )

    def _claude_chain(self, max_tokens: int, timeout: float, temperature: float = 0.2) -> ModelChain:
        claude = self._provider("claude")
        return ModelChain([
            ChainStep(claude, MODELS["claude_primary"], timeout, max_tokens=max_tokens, temperature=temperature),
            ChainStep(claude, MODELS["claude_fallback"], timeout, max_tokens=max_tokens, temperature=temperature),
        ])

    # =========================================================================
    # Normal mode
    # =========================================================================

    def _clarify(self, message: str, history_text: str) -> ChatResponse:
        user = f"Consulta (formulada de manera general):\n{message}\n\n"
        if history_text:
            user += f"Contexto previo:\n{history_text}\n\n"
        user += "Genera preguntas genéricas para precisar un escenario hipotético sin datos personales."

        chain = self._claude_chain(self.config.clarifier_max_tokens, self.config.clarifier_timeout, temperature=0.1)
        questions: list[str] = []
        try:
            raw = chain.run(LLM_PROMPTS["clarifier_system"], lambda _max_chars: user).content
            questions = parse_clarifier_questions(raw, self.config.max_clarify_questions)
        except AllProvidersFailedError as e:
            logger.warning(f"Clarifier unavailable, using fallback questions: {e}")
        return ChatResponse.clarify(questions or clarify_fallback_questions(MODE_NORMAL))

    def _agent_tasks(self, base_user: str) -> list[AgentTask]:
        cfg = self.config

        def task(agent, provider, models, system):
            return AgentTask(
                agent=agent,
                provider=self._provider(provider),
                models=models,
                system=system,
                user=base_user,
                max_tokens=cfg.agent_max_tokens,
                temperature=0.2,
                timeout=cfg.agent_timeout,
            )

        tasks = [
            task("xAI Grok", "xai", [MODELS["xai"], MODELS["xai_fallback"]], LLM_PROMPTS["agent_xai"]),
            task("Gemini", "gemini", [MODELS["gemini_primary"], MODELS["gemini_fallback"]], LLM_PROMPTS["agent_openai"]),
            task("OpenAI", "openai", [MODELS["openai_primary"], MODELS["openai_fallback"]], LLM_PROMPTS["agent_openai"]),
        ]
        if self._provider("groq").available:
            tasks.append(task("Groq", "groq", [MODELS["groq"]], LLM_PROMPTS["agent_groq"]))
        return tasks

    def _fallback_synthesis(self, message: str, results) -> Optional[str]:
        cfg = self.config
        data = "\n\n".join(
            f"{r.agent}:\n{truncate(r.content, cfg.fallback_result_chars)}" for r in results if r.ok
        )
        user = f"Consulta: {message}\n\nDatos disponibles:\n{data}"
        steps = [
            ChainStep(self._provider("openai"), MODELS["openai_primary"], cfg.fallback_timeout, max_tokens=1800, temperature=0.2),
            ChainStep(self._provider("openai"), MODELS["openai_fallback"], cfg.fallback_timeout, max_tokens=1800, temperature=0.2),
            ChainStep(self._provider("groq"), MODELS["groq"], cfg.fallback_timeout, max_tokens=1800, temperature=0.2),
            ChainStep(self._provider("xai"), MODELS["xai"], cfg.fallback_timeout, max_tokens=1800, temperature=0.2),
        ]
        try:
            return ModelChain(steps).run(LLM_PROMPTS["fallback_synthesis_system"], lambda _max_chars: user).content
        except AllProvidersFailedError as e:
            logger.error(f"Fallback synthesis failed: {e}")
            return None

    def _handle_normal(self, message: str, history_text: str) -> tuple[ChatResponse, str, int]:
        cfg = self.config

        if not self._provider("claude").available:
            return (
                ChatResponse.reject(MESSAGES["missing_orchestrator_key"], status_code=503),
                "reject",
                0,
            )

        if needs_clarification(message):
            return self._clarify(message, history_text), "clarify", 0

        retrieval = self._retrieve(message)
        verdict = self.retriever.check_sufficiency(retrieval, message)
        if not verdict.sufficient:
            enqueue_for_enrichment(self.store, message, MODE_NORMAL)
        context = format_vigente_context(retrieval.chunks, cfg.context_max_chars)

        base_user = f"{DISCLAIMER_HARD_RULES}\nTema/pregunta (general): {message}\n\n"
        if history_text:
            base_user += f"Contexto previo:\n{history_text}\n\n"
        if context.text:
            base_user += f"Fuentes oficiales verificadas (corpus):\n{context.text}\n\n"
        base_user += f"Instrucción:\n{busqueda_prompt(truncate(message, cfg.topic_max_chars))}"

        results = fan_out(self._agent_tasks(base_user))
        get_metrics_collector().record_agent_results(results)
        success_count = sum(1 for r in results if r.ok)
        fail_count = max(0, cfg.total_agents - success_count)
        logger.info(
            f"Agents OK: {success_count}/{cfg.total_agents} | failed: {fail_count} | "
            f"used: {', '.join(r.agent for r in results if r.ok)}"
        )

        note = (
            MESSAGES["partial_agents_note"].format(count=success_count, total=cfg.total_agents)
            if fail_count > 0 else None
        )

        judge_user = f"Consulta (general):\n{message}\n\n"
        if history_text:
            judge_user += f"Contexto previo:\n{history_text}\n\n"
        if context.text:
            judge_user += f"Fuentes oficiales verificadas (corpus):\n{context.text}\n\n"
        judge_user += "Resultados de agentes (pueden contener errores; verifica y sintetiza):\n\n"
        judge_user += "\n".join(
            f"=== {r.agent} (OK) ===\n{truncate(r.content, cfg.agent_result_chars)}\n"
            if r.ok else f"=== {r.agent} (FALLÓ) ===\nError: {r.error}\n"
            for r in results
        )

        outcome = "answer"
        try:
            final = self._claude_chain(cfg.synthesis_max_tokens, cfg.synthesis_timeout).run(
                LLM_PROMPTS["synthesis_system"], lambda _max_chars: judge_user,
            ).content
        except AllProvidersFailedError as e:
            logger.error(f"Claude synthesis failed, trying other providers: {e}")
            final = self._fallback_synthesis(message, results)
            if not final:
                final = MESSAGES["synthesis_failed"].format(count=success_count)
                outcome = "degraded"
            note = MESSAGES["claude_fallback_note"].format(count=success_count)

        if note:
            final = f"{note}\n\n{final}"
        return ChatResponse.answer(final, note=note, sources=self._sources(retrieval)), outcome, retrieval.total

    # =========================================================================
    # Max-reliability mode
    # =========================================================================

    def _researcher_chain(self) -> ModelChain:
        cfg = self.config
        claude = self._provider("claude")
        return ModelChain([
            ChainStep(claude, MODELS["claude_primary"], cfg.researcher_timeout,
                      max_context_chars=None, max_tokens=cfg.researcher_max_tokens),
            ChainStep(claude, MODELS["claude_fallback"], cfg.researcher_retry_timeout,
                      max_context_chars=cfg.researcher_narrow_context_chars, max_tokens=cfg.researcher_max_tokens),
            ChainStep(self._provider("openai"), MODELS["openai_primary"], cfg.researcher_retry_timeout,
                      max_context_chars=cfg.researcher_narrow_context_chars, max_tokens=cfg.researcher_max_tokens),
        ])

    def _handle_max_reliability(self, message: str, history_text: str) -> tuple[ChatResponse, str, int]:
        cfg = self.config
        retrieval = self._retrieve(message)
        verdict = self.retriever.check_sufficiency(retrieval, message)
        if not verdict.sufficient:
            logger.info(f"Insufficient evidence ({verdict.reason}); deferring to enrichment")
            return self._defer(message, MODE_MAX_RELIABILITY, retrieval), "deferred", retrieval.total

        context = format_reliability_context(retrieval.chunks, cfg.context_max_chars)

        def build_user(max_chars: Optional[int]) -> str:
            text = context.context_text if max_chars is None else context.context_text[:max_chars]
            return build_researcher_user_prompt(message, text, history_text)

        sources = self._sources(retrieval)
        try:
            raw = self._researcher_chain().run(LLM_PROMPTS["researcher_system"], build_user).content
        except AllProvidersFailedError as e:
            logger.error(f"Researcher chain exhausted: {e}")
            return (
                ChatResponse.answer(
                    DISCLAIMER_PREFIX + MESSAGES["degraded_answer"], note="degraded", sources=sources,
                ),
                "degraded",
                retrieval.total,
            )

        outcome = self.pipeline.run(
            retrieval.chunks, initial_model_raw=raw, all_chunk_text=context.all_chunk_text,
        )
        if outcome.kind == OUTCOME_CLARIFY:
            return ChatResponse.clarify(outcome.questions), "clarify", retrieval.total
        if outcome.kind == OUTCOME_ENRICHMENT:
            return self._defer(message, MODE_MAX_RELIABILITY, retrieval), "deferred", retrieval.total

        payload = outcome.payload.to_dict()
        reliability = {k: payload[k] for k in ("decision", "confidence", "caveats", "next_steps", "citations")}
        return (
            ChatResponse.answer(outcome.payload.content, sources=sources, reliability=reliability),
            "answer",
            retrieval.total,
        )
