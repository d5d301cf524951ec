"""
Model pricing in USD per 1M tokens
"""
import math
from dataclasses import dataclass

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    prompt_per_1m: float
    completion_per_1m: float


MODEL_PRICING: dict[str, ModelPricing] = {
    # Gemini chat
    "gemini-2.0-flash": ModelPricing(0.10, 0.40),
    "gemini-2.0-flash-lite": ModelPricing(0.075, 0.30),
    "gemini-2.5-flash": ModelPricing(0.30, 2.50),
    "gemini-2.5-flash-lite": ModelPricing(0.10, 0.40),
    "gemini-3-pro-preview": ModelPricing(2.0, 12.0),
    # OpenAI chat
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4o": ModelPricing(2.50, 10.0),
    # Embeddings (no completion tokens are ever billed)
    "gemini-embedding-001": ModelPricing(0.15, 0.15),
    "text-embedding-3-small": ModelPricing(0.02, 0.02),
}

TRANSCRIPTION_PER_MINUTE_USD = 0.01


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        logger.warning("Unknown model, cost not calculated", extra_data={"model": model})
        return 0.0
    return (
        prompt_tokens / 1_000_000 * pricing.prompt_per_1m
        + completion_tokens / 1_000_000 * pricing.completion_per_1m
    )


def calculate_transcription_cost(duration_seconds: float) -> float:
    return duration_seconds / 60 * TRANSCRIPTION_PER_MINUTE_USD


def estimate_tokens(text: str) -> int:
    """Rough count for providers that do not report embedding usage (~4 chars/token)"""
    return math.ceil(len(text) / 4)
