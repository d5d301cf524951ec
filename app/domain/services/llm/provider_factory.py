"""
Provider Factory - builds chat and embedding providers from settings
"""
from __future__ import annotations

from app.core.config import settings
from app.core.logging import get_logger
from app.domain.services.llm.base_provider import BaseEmbeddingProvider, BaseLLMProvider
from app.domain.services.llm.fallback_provider import FallbackLLMProvider
from app.domain.services.llm.gemini_provider import GeminiEmbeddingProvider, GeminiProvider
from app.domain.services.llm.openai_provider import OpenAIEmbeddingProvider, OpenAIProvider

logger = get_logger(__name__)

DEFAULT_MODELS = {
    "gemini": "gemini-2.5-flash",
    "openai": "gpt-4o-mini",
}


def _create_llm(provider_type: str, api_key: str, model: str | None) -> BaseLLMProvider:
    model = model or DEFAULT_MODELS[provider_type]
    if provider_type == "gemini":
        return GeminiProvider(api_key=api_key, model=model)
    if provider_type == "openai":
        return OpenAIProvider(api_key=api_key, model=model)
    raise ValueError(f"Unknown LLM provider type: {provider_type}")


def create_llm_provider() -> BaseLLMProvider:
    """Primary provider, wrapped with the fallback one when it is configured"""
    primary = _create_llm(settings.LLM_PROVIDER, settings.LLM_API_KEY, settings.LLM_MODEL)

    if not settings.LLM_FALLBACK_PROVIDER or not settings.LLM_FALLBACK_API_KEY:
        return primary

    fallback = _create_llm(
        settings.LLM_FALLBACK_PROVIDER,
        settings.LLM_FALLBACK_API_KEY,
        settings.LLM_FALLBACK_MODEL,
    )
    logger.info(
        "LLM provider initialized with fallback",
        extra_data={"primary": primary.name, "fallback": fallback.name}
    )
    return FallbackLLMProvider(primary, fallback)


def create_embedding_provider() -> BaseEmbeddingProvider:
    api_key = settings.EMBEDDING_API_KEY or settings.LLM_API_KEY
    if settings.EMBEDDING_PROVIDER == "gemini":
        return GeminiEmbeddingProvider(api_key=api_key, model=settings.EMBEDDING_MODEL)
    if settings.EMBEDDING_PROVIDER == "openai":
        return OpenAIEmbeddingProvider(api_key=api_key, model=settings.EMBEDDING_MODEL)
    raise ValueError(f"Unknown embedding provider type: {settings.EMBEDDING_PROVIDER}")
