"""
OpenAI providers over the REST API (chat completions and embeddings)
"""
from __future__ import annotations

import httpx

from app.core.circuit_breaker import (
    CircuitBreaker,
    get_embedding_circuit_breaker,
    get_llm_circuit_breaker,
)
from app.core.config import settings
from app.core.exceptions import (
    EmbeddingProviderError,
    LLMProviderError,
    ServiceTimeoutError,
)
from app.domain.services.llm.base_provider import (
    BaseEmbeddingProvider,
    BaseLLMProvider,
    FinishReason,
    LLMRequest,
    LLMResponse,
    TokenUsage,
)


def map_finish_reason(reason: str | None) -> FinishReason:
    if reason in ("stop", "length", "content_filter"):
        return reason
    return "stop"


class OpenAIProvider(BaseLLMProvider):

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = (base_url or settings.OPENAI_API_BASE_URL).rstrip("/")
        self._timeout = timeout_seconds or settings.LLM_REQUEST_TIMEOUT_SECONDS
        self._circuit_breaker = circuit_breaker or get_llm_circuit_breaker("openai")

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    async def generate_response(self, request: LLMRequest) -> LLMResponse:
        payload = {
            "model": self._model,
            "messages": [{"role": "system", "content": request.system_prompt}] + [
                {"role": m.role, "content": m.content} for m in request.messages
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        return await self._circuit_breaker.execute(self._generate, payload)

    async def _generate(self, payload: dict) -> LLMResponse:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError(self.name, self._timeout)
        except httpx.RequestError as e:
            raise LLMProviderError(self.name, f"Network error: {e}")

        if response.status_code != 200:
            raise LLMProviderError.from_response(self.name, "chat.completions", response)

        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise LLMProviderError(self.name, "No choices in response")
        choice = choices[0]

        usage = data.get("usage") or {}
        return LLMResponse(
            content=(choice.get("message") or {}).get("content") or "",
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
            finish_reason=map_finish_reason(choice.get("finish_reason")),
            model=self._model,
            provider=self.name,
        )


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        *,
        dimensions: int = 1536,
        base_url: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._dimensions = dimensions
        self._base_url = (base_url or settings.OPENAI_API_BASE_URL).rstrip("/")
        self._circuit_breaker = circuit_breaker or get_embedding_circuit_breaker("openai")

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def generate_embedding(self, text: str) -> list[float]:
        return await self._circuit_breaker.execute(self._embed, text)

    async def _embed(self, text: str) -> list[float]:
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self._base_url}/embeddings",
                    json={"model": self._model, "input": text},
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError(self.name, 30.0)
        except httpx.RequestError as e:
            raise EmbeddingProviderError(self.name, f"Network error: {e}")

        if response.status_code != 200:
            raise EmbeddingProviderError.from_response(self.name, "embeddings", response)

        data = response.json().get("data") or []
        if not data:
            raise EmbeddingProviderError(self.name, "Empty embedding in response")
        return data[0]["embedding"]
