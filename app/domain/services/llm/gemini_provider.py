"""
Google Gemini providers over the Generative Language REST API
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


_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}


def map_finish_reason(reason: str | None) -> FinishReason:
    return _FINISH_REASONS.get(reason or "", "stop")


def build_contents(request: LLMRequest) -> list[dict]:
    """
    Chat history in Gemini's shape.

    Gemini rejects a conversation that opens with a model turn, so leading
    assistant messages (e.g. a follow-up we sent first) are dropped.
    """
    contents = [
        {
            "role": "user" if message.role == "user" else "model",
            "parts": [{"text": message.content}],
        }
        for message in request.messages
    ]
    while contents and contents[0]["role"] == "model":
        contents.pop(0)
    return contents


class GeminiProvider(BaseLLMProvider):

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = (base_url or settings.GEMINI_API_BASE_URL).rstrip("/")
        self._timeout = timeout_seconds or settings.LLM_REQUEST_TIMEOUT_SECONDS
        self._circuit_breaker = circuit_breaker or get_llm_circuit_breaker("gemini")

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def model(self) -> str:
        return self._model

    async def generate_response(self, request: LLMRequest) -> LLMResponse:
        contents = build_contents(request)
        if not contents:
            raise LLMProviderError(self.name, "No user message found in request")

        payload = {
            "systemInstruction": {"parts": [{"text": request.system_prompt}]},
            "contents": contents,
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        return await self._circuit_breaker.execute(self._generate, payload)

    async def _generate(self, payload: dict) -> LLMResponse:
        url = f"{self._base_url}/models/{self._model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": self._api_key},
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError(self.name, self._timeout)
        except httpx.RequestError as e:
            raise LLMProviderError(self.name, f"Network error: {e}")

        if response.status_code != 200:
            raise LLMProviderError.from_response(self.name, "generateContent", response)

        data = response.json()
        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)

        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            content=text,
            usage=TokenUsage(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            ),
            finish_reason=map_finish_reason(candidate.get("finishReason")),
            model=self._model,
            provider=self.name,
        )


class GeminiEmbeddingProvider(BaseEmbeddingProvider):

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-embedding-001",
        *,
        dimensions: int = 768,
        base_url: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._dimensions = dimensions
        self._base_url = (base_url or settings.GEMINI_API_BASE_URL).rstrip("/")
        self._circuit_breaker = circuit_breaker or get_embedding_circuit_breaker("gemini")

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def generate_embedding(self, text: str) -> list[float]:
        return await self._circuit_breaker.execute(self._embed, text)

    async def _embed(self, text: str) -> list[float]:
        url = f"{self._base_url}/models/{self._model}:embedContent"
        payload = {
            "model": f"models/{self._model}",
            "content": {"parts": [{"text": text}]},
            "outputDimensionality": self._dimensions,
        }
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": self._api_key},
                )
        except httpx.TimeoutException:
            raise ServiceTimeoutError(self.name, 30.0)
        except httpx.RequestError as e:
            raise EmbeddingProviderError(self.name, f"Network error: {e}")

        if response.status_code != 200:
            raise EmbeddingProviderError.from_response(self.name, "embedContent", response)

        values = (response.json().get("embedding") or {}).get("values")
        if not values:
            raise EmbeddingProviderError(self.name, "Empty embedding in response")
        return values
