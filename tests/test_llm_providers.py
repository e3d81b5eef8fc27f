"""
Tests for execution/rd_legal_rag/llm_providers.py

Covers: provider construction, the three SDK/HTTP adapters (mocked),
        parallel fan-out settlement, and the ModelChain fallback order.
"""

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import FakeProvider, failing


# ---------------------------------------------------------------------------
# Provider basics
# ---------------------------------------------------------------------------

class TestProviderBasics:

    def test_get_provider_classes(self):
        from execution.rd_legal_rag.llm_providers import (
            AnthropicProvider,
            GeminiProvider,
            OpenAICompatibleProvider,
            get_provider,
        )
        assert isinstance(get_provider("openai", "k"), OpenAICompatibleProvider)
        assert isinstance(get_provider("groq", "k"), OpenAICompatibleProvider)
        assert isinstance(get_provider("xai", "k"), OpenAICompatibleProvider)
        assert isinstance(get_provider("claude", "k"), AnthropicProvider)
        assert isinstance(get_provider("gemini", "k"), GeminiProvider)

    def test_unknown_provider(self):
        from execution.rd_legal_rag.llm_providers import get_provider
        with pytest.raises(ValueError, match="Unknown provider"):
            get_provider("mistral")

    def test_key_from_env(self, monkeypatch):
        from execution.rd_legal_rag.llm_providers import get_provider
        assert not get_provider("groq").available
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        assert get_provider("groq").available

    def test_missing_key_raises(self):
        from execution.rd_legal_rag.llm_providers import ProviderError
        provider = FakeProvider("openai", available=False)
        with pytest.raises(ProviderError, match="Falta OPENAI_API_KEY"):
            provider.complete("gpt-4o", "s", "u")
        assert provider.calls == []

    def test_empty_response_raises(self):
        from execution.rd_legal_rag.llm_providers import ProviderError
        with pytest.raises(ProviderError, match="empty response"):
            FakeProvider("groq", "   ").complete("m", "s", "u")

    def test_response_stripped(self):
        assert FakeProvider("groq", "  hola \n").complete("m", "s", "u") == "hola"

    def test_configured_providers_reports_booleans(self, monkeypatch):
        from execution.rd_legal_rag.llm_providers import configured_providers
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        env = configured_providers()
        assert env["OPENAI_API_KEY"] is True
        assert env["ANTHROPIC_API_KEY"] is False
        assert set(env) == {
            "OPENAI_API_KEY", "GROQ_API_KEY", "XAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY",
        }
        assert "sk-secret" not in str(env)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class TestOpenAICompatibleProvider:

    def _provider(self, name="openai"):
        from execution.rd_legal_rag.llm_providers import get_provider
        provider = get_provider(name, "test-key")
        provider._client = MagicMock()
        return provider

    def test_chat_completion(self):
        provider = self._provider("xai")
        provider._client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Respuesta"))]
        )
        assert provider.complete("grok-beta", "sistema", "usuario", timeout=10) == "Respuesta"
        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "sistema"}
        assert kwargs["timeout"] == 10

    def test_timeout_mapped(self):
        import httpx
        from openai import APITimeoutError
        from execution.rd_legal_rag.llm_providers import ProviderTimeoutError
        provider = self._provider()
        provider._client.chat.completions.create.side_effect = APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        )
        with pytest.raises(ProviderTimeoutError):
            provider.complete("gpt-4o", "s", "u")

    def test_other_errors_wrapped(self):
        from execution.rd_legal_rag.llm_providers import ProviderError
        provider = self._provider("groq")
        provider._client.chat.completions.create.side_effect = RuntimeError("503")
        with pytest.raises(ProviderError, match="Groq: RuntimeError: 503"):
            provider.complete("llama", "s", "u")


class TestAnthropicProvider:

    def test_joins_text_blocks(self):
        from execution.rd_legal_rag.llm_providers import get_provider
        provider = get_provider("claude", "test-key")
        provider._client = MagicMock()
        provider._client.messages.create.return_value = SimpleNamespace(content=[
            SimpleNamespace(type="text", text="Parte 1. "),
            SimpleNamespace(type="tool_use", text="ignorado"),
            SimpleNamespace(type="text", text="Parte 2."),
        ])
        assert provider.complete("claude-sonnet-4-5", "s", "u") == "Parte 1. Parte 2."
        assert provider._client.messages.create.call_args.kwargs["system"] == "s"


class TestGeminiProvider:

    def _response(self, status=200, data=None):
        resp = MagicMock()
        resp.status_code = status
        resp.text = "error body"
        resp.json.return_value = data or {}
        return resp

    def test_generate_content(self, monkeypatch):
        from execution.rd_legal_rag.llm_providers import get_provider
        post = MagicMock(return_value=self._response(data={
            "candidates": [{"content": {"parts": [{"text": "Hola "}, {"text": "mundo"}]}}]
        }))
        monkeypatch.setattr("execution.rd_legal_rag.llm_providers.requests.post", post)

        out = get_provider("gemini", "g-key").complete("gemini-3-flash", "sistema", "usuario")
        assert out == "Hola mundo"
        args, kwargs = post.call_args
        assert args[0].endswith("/gemini-3-flash:generateContent")
        assert kwargs["params"] == {"key": "g-key"}
        assert kwargs["json"]["systemInstruction"] == {"parts": [{"text": "sistema"}]}

    def test_http_error(self, monkeypatch):
        from execution.rd_legal_rag.llm_providers import ProviderError, get_provider
        monkeypatch.setattr(
            "execution.rd_legal_rag.llm_providers.requests.post",
            MagicMock(return_value=self._response(status=429)),
        )
        with pytest.raises(ProviderError, match="HTTP 429"):
            get_provider("gemini", "g-key").complete("m", "s", "u")

    def test_timeout(self, monkeypatch):
        import requests
        from execution.rd_legal_rag.llm_providers import ProviderTimeoutError, get_provider
        monkeypatch.setattr(
            "execution.rd_legal_rag.llm_providers.requests.post",
            MagicMock(side_effect=requests.Timeout("slow")),
        )
        with pytest.raises(ProviderTimeoutError):
            get_provider("gemini", "g-key").complete("m", "s", "u")

    def test_no_candidates_is_empty(self, monkeypatch):
        from execution.rd_legal_rag.llm_providers import ProviderError, get_provider
        monkeypatch.setattr(
            "execution.rd_legal_rag.llm_providers.requests.post",
            MagicMock(return_value=self._response(data={"candidates": []})),
        )
        with pytest.raises(ProviderError, match="empty response"):
            get_provider("gemini", "g-key").complete("m", "s", "u")


# ---------------------------------------------------------------------------
# fan_out
# ---------------------------------------------------------------------------

def _task(agent, provider, models=("m1",), timeout=5.0):
    from execution.rd_legal_rag.llm_providers import AgentTask
    return AgentTask(agent=agent, provider=provider, models=list(models), system="s", user="u", timeout=timeout)


class TestFanOut:

    def test_results_in_task_order(self):
        from execution.rd_legal_rag.llm_providers import fan_out
        results = fan_out([
            _task("xAI Grok", FakeProvider("xai", "a")),
            _task("OpenAI", FakeProvider("openai", "b")),
        ])
        assert [(r.agent, r.ok, r.content) for r in results] == [("xAI Grok", True, "a"), ("OpenAI", True, "b")]

    def test_unavailable_provider(self):
        from execution.rd_legal_rag.llm_providers import fan_out
        provider = FakeProvider("groq", available=False)
        result = fan_out([_task("Groq", provider)])[0]
        assert not result.ok
        assert result.error == "Falta GROQ_API_KEY"
        assert provider.calls == []

    def test_second_model_fallback(self):
        from execution.rd_legal_rag.llm_providers import ProviderError, fan_out

        def script(model, system, user):
            if model == "grok-beta":
                raise ProviderError("xAI Grok", "HTTP 404")
            return "ok desde fallback"

        result = fan_out([_task("xAI Grok", FakeProvider("xai", script), models=("grok-beta", "grok-fast"))])[0]
        assert result.ok
        assert result.model == "grok-fast"

    def test_zero_successes(self):
        from execution.rd_legal_rag.llm_providers import fan_out
        results = fan_out([_task("OpenAI", failing("openai")), _task("Groq", failing("groq"))])
        assert not any(r.ok for r in results)
        assert all("HTTP 500" in r.error for r in results)

    def test_unexpected_exception_settles(self):
        from execution.rd_legal_rag.llm_providers import fan_out
        result = fan_out([_task("OpenAI", FakeProvider("openai", RuntimeError("kaboom")))])[0]
        assert not result.ok
        assert result.error == "RuntimeError: kaboom"

    def test_deadline_marks_timeout(self):
        from execution.rd_legal_rag.llm_providers import fan_out

        def slow(model, system, user):
            time.sleep(1.0)
            return "tarde"

        results = fan_out(
            [_task("OpenAI", FakeProvider("openai", slow), timeout=0.05), _task("Groq", FakeProvider("groq", "rápido"))],
            grace_seconds=0.1,
        )
        assert results[0].error == "timeout"
        assert results[1].ok

    def test_each_task_has_its_own_deadline(self):
        from execution.rd_legal_rag.llm_providers import fan_out

        def sleeper(seconds, text):
            def script(model, system, user):
                time.sleep(seconds)
                return text
            return script

        results = fan_out(
            [
                _task("OpenAI", FakeProvider("openai", sleeper(0.6, "tarde")), timeout=0.05),
                _task("Claude", FakeProvider("claude", sleeper(0.3, "a tiempo")), timeout=2.0),
            ],
            grace_seconds=0.1,
        )
        assert results[0].error == "timeout"
        assert results[1].ok
        assert results[1].content == "a tiempo"

    def test_empty(self):
        from execution.rd_legal_rag.llm_providers import fan_out
        assert fan_out([]) == []


# ---------------------------------------------------------------------------
# ModelChain
# ---------------------------------------------------------------------------

class TestModelChain:

    def test_primary_success(self):
        from execution.rd_legal_rag.llm_providers import ChainStep, ModelChain
        claude = FakeProvider("claude", "respuesta")
        result = ModelChain([ChainStep(claude, "claude-sonnet-4-5", 60)]).run("s", lambda n: f"ctx:{n}")
        assert result.content == "respuesta"
        assert result.attempts == []
        assert claude.calls[0]["user"] == "ctx:None"

    def test_timeout_falls_back_with_narrow_context(self):
        from execution.rd_legal_rag.llm_providers import (
            ChainStep,
            ModelChain,
            ProviderTimeoutError,
        )
        primary = FakeProvider("claude", ProviderTimeoutError("Claude", "timeout after 60s"))
        backup = FakeProvider("openai", "respaldo")
        chain = ModelChain([
            ChainStep(primary, "claude-sonnet-4-5", 60),
            ChainStep(backup, "gpt-4o", 30, max_context_chars=6000),
        ])
        result = chain.run("s", lambda n: f"ctx:{n}")
        assert result.content == "respaldo"
        assert result.step.provider is backup
        assert result.attempts == ["Claude/claude-sonnet-4-5: timeout"]
        assert backup.calls[0] == {"model": "gpt-4o", "system": "s", "user": "ctx:6000", "timeout": 30}

    def test_all_failed(self):
        from execution.rd_legal_rag.llm_providers import AllProvidersFailedError, ChainStep, ModelChain
        chain = ModelChain([
            ChainStep(failing("claude"), "claude-sonnet-4-5", 60),
            ChainStep(FakeProvider("openai", available=False), "gpt-4o", 30),
        ])
        with pytest.raises(AllProvidersFailedError) as exc:
            chain.run("s", lambda n: "u")
        assert exc.value.attempts == [
            "Claude/claude-sonnet-4-5: error",
            "OpenAI/gpt-4o: Falta OPENAI_API_KEY",
        ]
