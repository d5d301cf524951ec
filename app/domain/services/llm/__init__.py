"""
LLM provider abstraction layer

Chat and embedding providers behind one interface, so the engine can switch
between Gemini and OpenAI (or chain them) through settings only.
"""
from app.domain.services.llm.base_provider import (
    BaseEmbeddingProvider,
    BaseLLMProvider,
    LLMMessage,
    LLMRequest,
    LLMResponse,
    TokenUsage,
)
from app.domain.services.llm.fallback_provider import FallbackLLMProvider
from app.domain.services.llm.provider_factory import (
    create_embedding_provider,
    create_llm_provider,
)
from app.domain.services.llm.usage_logger import UsageEntry, UsageLogger

__all__ = [
    "BaseEmbeddingProvider",
    "BaseLLMProvider",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
    "TokenUsage",
    "FallbackLLMProvider",
    "create_embedding_provider",
    "create_llm_provider",
    "UsageEntry",
    "UsageLogger",
]
