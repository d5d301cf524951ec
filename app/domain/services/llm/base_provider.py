"""
Base interfaces for chat and embedding providers.

The engine depends only on these; concrete providers own HTTP, auth and the
circuit breaker.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Literal

FinishReason = Literal["stop", "length", "content_filter", "error"]


@dataclass
class LLMMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass
class LLMRequest:
    system_prompt: str
    messages: list[LLMMessage] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 1500


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: FinishReason = "stop"
    model: str = ""
    provider: str = ""


class BaseLLMProvider(ABC):
    """Chat completion contract"""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logs and usage rows"""

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier used for pricing"""

    @abstractmethod
    async def generate_response(self, request: LLMRequest) -> LLMResponse:
        """
        Run one completion.

        Raises:
            TransientProviderError: HTTP failure, timeout or open circuit
        """


class BaseEmbeddingProvider(ABC):
    """Text embedding contract"""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logs and usage rows"""

    @property
    @abstractmethod
    def model(self) -> str:
        """Embedding model identifier"""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Vector length produced by the model"""

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        """
        Embed ``text``.

        Raises:
            TransientProviderError: HTTP failure, timeout or open circuit
        """
