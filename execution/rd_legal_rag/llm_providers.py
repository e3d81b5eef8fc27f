"""
Chat model providers for the Dominican Legal RAG.

Wraps the five upstream providers behind one ``complete()`` call:

- OpenAI, Groq and xAI through the OpenAI SDK (Groq/xAI via base_url)
- Claude through the Anthropic SDK
- Gemini through the generativelanguage REST endpoint (requests)

On top of that it provides the two calling patterns the chat layer needs:

- ``fan_out``: N independent calls in parallel, each with its own timeout,
  every failure turned into a labeled ``AgentResult`` instead of an exception
- ``ModelChain``: ordered attempts (primary, narrower context with a
  shorter deadline, alternate provider) that only raises once every step
  has failed
"""

import os
import time
import logging
import concurrent.futures
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

# Model ids used across the app
MODELS = {
    "xai": "grok-beta",
    "xai_fallback": "grok-4-1-fast-reasoning",
    "xai_verify": "grok-2-1212",
    "openai_primary": "gpt-4o",
    "openai_fallback": "gpt-4o-mini",
    "groq": "llama-3.3-70b-versatile",
    "claude_primary": "claude-sonnet-4-5",
    "claude_fallback": "claude-haiku-4-5-20251001",
    "claude_verify": "claude-3-5-haiku-20241022",
    "gemini_primary": "gemini-3-flash",
    "gemini_fallback": "gemini-2.5-flash-lite",
}


class ProviderError(Exception):
    """A single provider call failed (HTTP error, empty output, missing key)."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded its deadline."""


class AllProvidersFailedError(Exception):
    """Every step of a ModelChain failed."""

    def __init__(self, attempts: list[str]):
        self.attempts = attempts
        super().__init__("All providers failed: " + "; ".join(attempts))


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of an upstream provider."""
    name: str
    label: str
    env_var: str
    kind: str  # "openai", "anthropic" or "gemini"
    base_url: Optional[str] = None


PROVIDER_SPECS = {
    "openai": ProviderSpec("openai", "OpenAI", "OPENAI_API_KEY", "openai"),
    "groq": ProviderSpec("groq", "Groq", "GROQ_API_KEY", "openai", "https://api.groq.com/openai/v1"),
    "xai": ProviderSpec("xai", "xAI Grok", "XAI_API_KEY", "openai", "https://api.x.ai/v1"),
    "claude": ProviderSpec("claude", "Claude", "ANTHROPIC_API_KEY", "anthropic"),
    "gemini": ProviderSpec("gemini", "Gemini", "GEMINI_API_KEY", "gemini", GEMINI_BASE_URL),
}


class ChatProvider:
    """Base class: one upstream chat model API."""

    def __init__(self, spec: ProviderSpec, api_key: Optional[str] = None):
        self.spec = spec
        self._api_key = api_key if api_key is not None else os.getenv(spec.env_var)
        self._client = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def label(self) -> str:
        return self.spec.label

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    def complete(
        self,
        model: str,
        system: str,
        user: str,
        max_tokens: int = 1800,
        temperature: float = 0.2,
        timeout: float = 30.0,
    ) -> str:
        """
        Run one system+user completion.

        Args:
            model: Provider model id
            system: System prompt
            user: User prompt
            max_tokens: Output token cap
            temperature: Sampling temperature
            timeout: Per-call deadline in seconds

        Returns:
            Stripped response text (never empty)

        Raises:
            ProviderTimeoutError: deadline exceeded
            ProviderError: any other failure, including a missing API key
        """
        if not self.available:
            raise ProviderError(self.label, f"Falta {self.spec.env_var}")

        logger.info(f"[{self.label}] calling model {model} (timeout={timeout}s)")
        text = self._complete(model, system, user, max_tokens, temperature, timeout)
        text = (text or "").strip()
        if not text:
            raise ProviderError(self.label, f"empty response from {model}")
        return text

    def _complete(self, model, system, user, max_tokens, temperature, timeout) -> str:
        raise NotImplementedError("Subclasses must implement _complete()")


class OpenAICompatibleProvider(ChatProvider):
    """OpenAI, Groq and xAI chat completions through the OpenAI SDK."""

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                base_url=self.spec.base_url,
                api_key=self._api_key,
                max_retries=0,
            )
        return self._client

    def _complete(self, model, system, user, max_tokens, temperature, timeout) -> str:
        from openai import APITimeoutError

        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout,
            )
        except APITimeoutError as e:
            raise ProviderTimeoutError(self.label, f"timeout after {timeout}s") from e
        except Exception as e:
            raise ProviderError(self.label, f"{type(e).__name__}: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class AnthropicProvider(ChatProvider):
    """Claude through the Anthropic Messages API."""

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self._api_key, max_retries=0)
        return self._client

    def _complete(self, model, system, user, max_tokens, temperature, timeout) -> str:
        import anthropic

        client = self._get_client()
        try:
            response = client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as e:
            raise ProviderTimeoutError(self.label, f"timeout after {timeout}s") from e
        except Exception as e:
            raise ProviderError(self.label, f"{type(e).__name__}: {e}") from e

        return "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "") == "text"
        )


class GeminiProvider(ChatProvider):
    """Gemini through the generativelanguage REST API."""

    def _complete(self, model, system, user, max_tokens, temperature, timeout) -> str:
        url = f"{self.spec.base_url}/{model}:generateContent"
        payload = {
            "contents": [{"role": "user", "parts": [{"text": user}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        try:
            resp = requests.post(url, params={"key": self._api_key}, json=payload, timeout=timeout)
        except requests.Timeout as e:
            raise ProviderTimeoutError(self.label, f"timeout after {timeout}s") from e
        except requests.RequestException as e:
            raise ProviderError(self.label, f"{type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise ProviderError(self.label, f"HTTP {resp.status_code}: {resp.text[:200]}")

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)


_PROVIDER_CLASSES = {
    "openai": OpenAICompatibleProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def get_provider(name: str, api_key: Optional[str] = None) -> ChatProvider:
    """Build a provider by short name (openai, groq, xai, claude, gemini)."""
    if name not in PROVIDER_SPECS:
        raise ValueError(f"Unknown provider '{name}'. Choose from: {', '.join(PROVIDER_SPECS)}")
    spec = PROVIDER_SPECS[name]
    return _PROVIDER_CLASSES[spec.kind](spec, api_key=api_key)


def build_providers() -> dict[str, ChatProvider]:
    """All providers keyed by short name, with keys read from the environment."""
    return {name: get_provider(name) for name in PROVIDER_SPECS}


def configured_providers() -> dict[str, bool]:
    """Which provider API keys are set (booleans only, never the values)."""
    return {spec.env_var: bool(os.getenv(spec.env_var)) for spec in PROVIDER_SPECS.values()}


# =============================================================================
# Parallel fan-out
# =============================================================================

@dataclass
class AgentTask:
    """One call in a fan-out. ``models`` are tried in order on the same provider."""
    agent: str
    provider: ChatProvider
    models: list[str]
    system: str
    user: str
    max_tokens: int = 1800
    temperature: float = 0.2
    timeout: float = 45.0


@dataclass
class AgentResult:
    """Settled outcome of one fan-out call."""
    agent: str
    ok: bool
    content: str = ""
    error: str = ""
    model: Optional[str] = None
    latency_ms: float = 0.0


def _run_task(task: AgentTask) -> AgentResult:
    start = time.time()
    if not task.provider.available:
        return AgentResult(task.agent, ok=False, error=f"Falta {task.provider.spec.env_var}")

    last_error = ""
    for model in task.models:
        try:
            content = task.provider.complete(
                model=model,
                system=task.system,
                user=task.user,
                max_tokens=task.max_tokens,
                temperature=task.temperature,
                timeout=task.timeout,
            )
            return AgentResult(
                task.agent, ok=True, content=content, model=model,
                latency_ms=(time.time() - start) * 1000,
            )
        except ProviderError as e:
            logger.warning(f"[{task.agent}] model {model} failed: {e}")
            last_error = str(e)

    return AgentResult(task.agent, ok=False, error=last_error, latency_ms=(time.time() - start) * 1000)


def fan_out(tasks: list[AgentTask], max_workers: int = 5, grace_seconds: float = 5.0) -> list[AgentResult]:
    """
    Run tasks in parallel and wait for all of them to settle.

    Each task gets its own deadline: submit time plus its timeout times the
    number of models it may try, plus a grace period. A task still running
    past its deadline becomes a timeout failure while the others keep going.

    Returns:
        One AgentResult per task, in task order
    """
    if not tasks:
        return []

    results: dict[int, AgentResult] = {}
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures: dict[concurrent.futures.Future, int] = {}
        deadlines: dict[concurrent.futures.Future, float] = {}
        for i, task in enumerate(tasks):
            future = executor.submit(_run_task, task)
            futures[future] = i
            deadlines[future] = time.monotonic() + task.timeout * max(len(task.models), 1) + grace_seconds

        pending = set(futures)
        while pending:
            next_deadline = min(deadlines[f] for f in pending)
            done, pending = concurrent.futures.wait(
                pending,
                timeout=max(0.0, next_deadline - time.monotonic()),
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
            for future in done:
                i = futures[future]
                try:
                    results[i] = future.result()
                except Exception as e:
                    logger.error(f"[{tasks[i].agent}] unexpected failure: {type(e).__name__}: {e}")
                    results[i] = AgentResult(tasks[i].agent, ok=False, error=f"{type(e).__name__}: {e}")

            now = time.monotonic()
            expired = {f for f in pending if deadlines[f] <= now}
            for future in expired:
                i = futures[future]
                budget = tasks[i].timeout * max(len(tasks[i].models), 1) + grace_seconds
                logger.warning(f"[{tasks[i].agent}] no answer within {budget:.1f}s, marking timeout")
                future.cancel()
                results[i] = AgentResult(tasks[i].agent, ok=False, error="timeout")
            pending -= expired
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    ok = sum(1 for r in results.values() if r.ok)
    logger.info(f"Fan-out settled: {ok}/{len(tasks)} agents OK")
    return [results[i] for i in range(len(tasks))]


# =============================================================================
# Fallback chain
# =============================================================================

@dataclass
class ChainStep:
    """One attempt of a ModelChain."""
    provider: ChatProvider
    model: str
    timeout: float
    max_context_chars: Optional[int] = None  # None means the full context
    max_tokens: int = 2000
    temperature: float = 0.1

    @property
    def label(self) -> str:
        return f"{self.provider.label}/{self.model}"


@dataclass
class ChainResult:
    """Successful output of a ModelChain."""
    content: str
    step: ChainStep
    attempts: list[str] = field(default_factory=list)


class ModelChain:
    """
    Ordered fallback over (provider, model, deadline, context size) steps.

    The user prompt is rebuilt for each step from ``build_user(max_chars)``
    so later steps can send a narrower context under a shorter deadline.
    """

    def __init__(self, steps: list[ChainStep]):
        self.steps = steps

    def run(self, system: str, build_user: Callable[[Optional[int]], str]) -> ChainResult:
        attempts: list[str] = []
        for step in self.steps:
            if not step.provider.available:
                attempts.append(f"{step.label}: Falta {step.provider.spec.env_var}")
                continue
            try:
                content = step.provider.complete(
                    model=step.model,
                    system=system,
                    user=build_user(step.max_context_chars),
                    max_tokens=step.max_tokens,
                    temperature=step.temperature,
                    timeout=step.timeout,
                )
                if attempts:
                    logger.info(f"Model chain recovered on {step.label} after: {attempts}")
                return ChainResult(content=content, step=step, attempts=attempts)
            except ProviderTimeoutError as e:
                logger.warning(f"Model chain step {step.label} timed out: {e}")
                attempts.append(f"{step.label}: timeout")
            except ProviderError as e:
                logger.warning(f"Model chain step {step.label} failed: {e}")
                attempts.append(f"{step.label}: error")

        raise AllProvidersFailedError(attempts)
