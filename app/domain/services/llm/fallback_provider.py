"""
Fallback provider - tries the primary, then the secondary, on any failure
"""
from app.core.logging import get_logger
from app.domain.services.llm.base_provider import BaseLLMProvider, LLMRequest, LLMResponse

logger = get_logger(__name__)


class FallbackLLMProvider(BaseLLMProvider):

    def __init__(self, primary: BaseLLMProvider, fallback: BaseLLMProvider):
        self.primary = primary
        self.fallback = fallback

    @property
    def name(self) -> str:
        return f"{self.primary.name}+{self.fallback.name}"

    @property
    def model(self) -> str:
        return self.primary.model

    async def generate_response(self, request: LLMRequest) -> LLMResponse:
        try:
            return await self.primary.generate_response(request)
        except Exception as e:
            logger.warning(
                "Primary LLM provider failed, using fallback",
                extra_data={
                    "primary": self.primary.name,
                    "fallback": self.fallback.name,
                    "error": str(e),
                }
            )
            return await self.fallback.generate_response(request)
