"""
Tests for the chat / embedding providers, the fallback chain and usage logging
"""
from unittest.mock import MagicMock, patch

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.config import settings
from app.core.exceptions import (
    CircuitBreakerOpenError,
    EmbeddingProviderError,
    LLMProviderError,
    ServiceTimeoutError,
)
from app.db.models.llm_usage_log import LLMUsageLog
from app.domain.services.llm.base_provider import LLMMessage, LLMRequest
from app.domain.services.llm.fallback_provider import FallbackLLMProvider
from app.domain.services.llm.gemini_provider import (
    GeminiEmbeddingProvider,
    GeminiProvider,
    build_contents,
)
from app.domain.services.llm.openai_provider import OpenAIEmbeddingProvider, OpenAIProvider
from app.domain.services.llm.pricing import (
    calculate_cost,
    calculate_transcription_cost,
    estimate_tokens,
)
from app.domain.services.llm.provider_factory import (
    create_embedding_provider,
    create_llm_provider,
)
from app.domain.services.llm.usage_logger import UsageEntry, UsageLogger, truncate_for_preview
from tests.conftest import ScriptedLLMProvider, llm_error, make_http_response


@pytest.fixture
def request_with_history() -> LLMRequest:
    return LLMRequest(
        system_prompt="You are a sales rep",
        messages=[
            LLMMessage(role="assistant", content="Hola! Sigues ahí?"),
            LLMMessage(role="user", content="Sí, quiero info"),
            LLMMessage(role="assistant", content="¡Claro!"),
            LLMMessage(role="user", content="¿Precio?"),
        ],
        temperature=0.5,
        max_tokens=200,
    )


class TestGeminiProvider:

    @pytest.mark.unit
    def test_contents_drop_leading_model_turns(self, request_with_history):
        contents = build_contents(request_with_history)

        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[0]["parts"] == [{"text": "Sí, quiero info"}]

    @pytest.mark.unit
    async def test_generate_response(self, mock_http_client, request_with_history):
        mock_http_client.post.return_value = make_http_response(200, {
            "candidates": [{
                "content": {"parts": [{"text": "```json\n"}, {"text": '{"responses": ["Hola"]}\n```'}]},
                "finishReason": "MAX_TOKENS",
            }],
            "usageMetadata": {"promptTokenCount": 120, "candidatesTokenCount": 30, "totalTokenCount": 150},
        })
        provider = GeminiProvider(api_key="key", model="gemini-2.5-flash")

        response = await provider.generate_response(request_with_history)

        assert response.content == '```json\n{"responses": ["Hola"]}\n```'
        assert response.usage.total_tokens == 150
        assert response.finish_reason == "length"
        assert response.provider == "gemini"

        url = mock_http_client.post.call_args.args[0]
        kwargs = mock_http_client.post.call_args.kwargs
        assert url.endswith("/models/gemini-2.5-flash:generateContent")
        assert kwargs["headers"] == {"x-goog-api-key": "key"}
        assert kwargs["json"]["systemInstruction"]["parts"][0]["text"] == "You are a sales rep"
        assert kwargs["json"]["generationConfig"] == {"temperature": 0.5, "maxOutputTokens": 200}

    @pytest.mark.unit
    async def test_http_error_raises_provider_error(self, mock_http_client, request_with_history):
        mock_http_client.post.return_value = make_http_response(503, text="overloaded")
        provider = GeminiProvider(api_key="key")

        with pytest.raises(LLMProviderError) as exc_info:
            await provider.generate_response(request_with_history)

        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.unit
    async def test_timeout(self, mock_http_client, request_with_history):
        mock_http_client.post.side_effect = httpx.ReadTimeout("slow")
        provider = GeminiProvider(api_key="key", timeout_seconds=5)

        with pytest.raises(ServiceTimeoutError):
            await provider.generate_response(request_with_history)

    @pytest.mark.unit
    async def test_request_without_user_message(self, mock_http_client):
        provider = GeminiProvider(api_key="key")
        request = LLMRequest(system_prompt="x", messages=[LLMMessage(role="assistant", content="Hola")])

        with pytest.raises(LLMProviderError):
            await provider.generate_response(request)
        mock_http_client.post.assert_not_called()

    @pytest.mark.unit
    async def test_open_circuit_skips_http(self, mock_http_client, request_with_history):
        mock_http_client.post.return_value = make_http_response(500)
        breaker = CircuitBreaker("llm:test", CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60))
        provider = GeminiProvider(api_key="key", circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(LLMProviderError):
                await provider.generate_response(request_with_history)
        with pytest.raises(CircuitBreakerOpenError):
            await provider.generate_response(request_with_history)

        assert mock_http_client.post.await_count == 2

    @pytest.mark.unit
    async def test_embedding(self, mock_http_client):
        mock_http_client.post.return_value = make_http_response(200, {"embedding": {"values": [0.1, 0.2]}})
        provider = GeminiEmbeddingProvider(api_key="key", dimensions=2)

        assert await provider.generate_embedding("hola") == [0.1, 0.2]
        payload = mock_http_client.post.call_args.kwargs["json"]
        assert payload["outputDimensionality"] == 2

    @pytest.mark.unit
    async def test_empty_embedding(self, mock_http_client):
        mock_http_client.post.return_value = make_http_response(200, {"embedding": {}})
        provider = GeminiEmbeddingProvider(api_key="key")

        with pytest.raises(EmbeddingProviderError):
            await provider.generate_embedding("hola")


class TestOpenAIProvider:

    @pytest.mark.unit
    async def test_generate_response(self, mock_http_client, request_with_history):
        mock_http_client.post.return_value = make_http_response(200, {
            "choices": [{"message": {"content": "Hola"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 50, "completion_tokens": 5, "total_tokens": 55},
        })
        provider = OpenAIProvider(api_key="sk-test")

        response = await provider.generate_response(request_with_history)

        assert response.content == "Hola"
        assert response.usage.prompt_tokens == 50
        messages = mock_http_client.post.call_args.kwargs["json"]["messages"]
        assert messages[0] == {"role": "system", "content": "You are a sales rep"}
        assert len(messages) == 5

    @pytest.mark.unit
    async def test_no_choices(self, mock_http_client, request_with_history):
        mock_http_client.post.return_value = make_http_response(200, {"choices": []})

        with pytest.raises(LLMProviderError):
            await OpenAIProvider(api_key="sk-test").generate_response(request_with_history)

    @pytest.mark.unit
    async def test_network_error(self, mock_http_client, request_with_history):
        mock_http_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(LLMProviderError, match="Network error"):
            await OpenAIProvider(api_key="sk-test").generate_response(request_with_history)

    @pytest.mark.unit
    async def test_embedding(self, mock_http_client):
        mock_http_client.post.return_value = make_http_response(200, {"data": [{"embedding": [0.3]}]})

        assert await OpenAIEmbeddingProvider(api_key="sk-test").generate_embedding("hola") == [0.3]


class TestFallbackProvider:

    @pytest.mark.unit
    async def test_primary_success(self, request_with_history):
        primary = ScriptedLLMProvider(["primary"])
        fallback = ScriptedLLMProvider(["fallback"])

        response = await FallbackLLMProvider(primary, fallback).generate_response(request_with_history)

        assert response.content == "primary"
        assert fallback.call_count == 0

    @pytest.mark.unit
    async def test_primary_failure_uses_fallback(self, request_with_history):
        primary = ScriptedLLMProvider([llm_error()])
        fallback = ScriptedLLMProvider(["fallback"])
        provider = FallbackLLMProvider(primary, fallback)

        response = await provider.generate_response(request_with_history)

        assert response.content == "fallback"
        assert provider.name == "scripted+scripted"

    @pytest.mark.unit
    async def test_both_fail(self, request_with_history):
        provider = FallbackLLMProvider(
            ScriptedLLMProvider([llm_error("a")]),
            ScriptedLLMProvider([llm_error("b")]),
        )

        with pytest.raises(LLMProviderError) as exc_info:
            await provider.generate_response(request_with_history)

        assert exc_info.value.message == "b"


class TestProviderFactory:

    @pytest.mark.unit
    def test_primary_only(self):
        with patch.object(settings, "LLM_PROVIDER", "openai"), \
             patch.object(settings, "LLM_MODEL", "gpt-4o-mini"), \
             patch.object(settings, "LLM_FALLBACK_PROVIDER", None):
            provider = create_llm_provider()

        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4o-mini"

    @pytest.mark.unit
    def test_with_fallback(self):
        with patch.object(settings, "LLM_PROVIDER", "gemini"), \
             patch.object(settings, "LLM_FALLBACK_PROVIDER", "openai"), \
             patch.object(settings, "LLM_FALLBACK_API_KEY", "sk-test"), \
             patch.object(settings, "LLM_FALLBACK_MODEL", None):
            provider = create_llm_provider()

        assert isinstance(provider, FallbackLLMProvider)
        assert isinstance(provider.fallback, OpenAIProvider)
        assert provider.fallback.model == "gpt-4o-mini"

    @pytest.mark.unit
    def test_fallback_without_key_is_ignored(self):
        with patch.object(settings, "LLM_PROVIDER", "gemini"), \
             patch.object(settings, "LLM_FALLBACK_PROVIDER", "openai"), \
             patch.object(settings, "LLM_FALLBACK_API_KEY", ""):
            assert isinstance(create_llm_provider(), GeminiProvider)

    @pytest.mark.unit
    def test_embedding_provider(self):
        with patch.object(settings, "EMBEDDING_PROVIDER", "openai"), \
             patch.object(settings, "EMBEDDING_MODEL", "text-embedding-3-small"):
            provider = create_embedding_provider()

        assert isinstance(provider, OpenAIEmbeddingProvider)


class TestPricing:

    @pytest.mark.unit
    def test_known_model(self):
        assert calculate_cost("gemini-2.5-flash", 1_000_000, 1_000_000) == pytest.approx(2.80)

    @pytest.mark.unit
    def test_unknown_model_costs_zero(self):
        assert calculate_cost("mystery-model", 1000, 1000) == 0.0

    @pytest.mark.unit
    def test_transcription_and_estimate(self):
        assert calculate_transcription_cost(90) == pytest.approx(0.015)
        assert estimate_tokens("abcdefghi") == 3
        assert estimate_tokens("") == 0


class TestUsageLogger:

    @pytest.mark.unit
    def test_chat_entry(self):
        entry = UsageEntry.for_chat(
            provider="gemini",
            model="gemini-2.5-flash",
            prompt_tokens=1000,
            completion_tokens=200,
            input_text="x" * 600,
            output_text="ok",
            session_id=7,
        )

        assert entry.total_tokens == 1200
        assert entry.cost_usd == pytest.approx(0.0008)
        assert entry.input_preview == "x" * 500 + "..."
        assert entry.is_error is False

    @pytest.mark.unit
    def test_error_entry(self):
        entry = UsageEntry.for_chat(
            provider="gemini", model="gemini-2.5-flash", prompt_tokens=0, completion_tokens=0,
            input_text="hola", output_text="", error="503",
        )

        assert entry.is_error is True
        assert entry.finish_reason == "error"
        assert entry.error_message == "503"

    @pytest.mark.unit
    def test_preview_truncation(self):
        assert truncate_for_preview(None) is None
        assert truncate_for_preview("short") == "short"

    @pytest.mark.unit
    async def test_log_persists_row(self, db_session: AsyncSession, session_factory):
        usage_logger = UsageLogger(session_factory)
        entry = UsageEntry.for_embedding(
            provider="gemini", model="gemini-embedding-001", input_text="hola mundo", session_id=3,
        )

        usage_logger.log_in_background(entry)
        await usage_logger.drain()

        rows = (await db_session.execute(select(LLMUsageLog))).scalars().all()
        assert len(rows) == 1
        assert rows[0].request_type == "embedding"
        assert rows[0].prompt_tokens == 3
        assert rows[0].session_id == 3

    @pytest.mark.unit
    async def test_log_failure_is_swallowed(self):
        broken_factory = MagicMock(side_effect=RuntimeError("db down"))
        usage_logger = UsageLogger(broken_factory)

        await usage_logger.log(UsageEntry(request_type="chat", provider="p", model="m"))
