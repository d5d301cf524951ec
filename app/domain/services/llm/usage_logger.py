"""
LLM usage logger - cost tracking rows written off the request path

Entries are persisted in a session of their own so a failed insert can never
roll back the conversation's transaction. Failures are logged and dropped.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal
from app.db.models.llm_usage_log import LLMUsageLog
from app.domain.services.llm.pricing import calculate_cost, estimate_tokens

logger = get_logger(__name__)

PREVIEW_CHARS = 500


def truncate_for_preview(text: str | None, max_length: int = PREVIEW_CHARS) -> str | None:
    if text is None or len(text) <= max_length:
        return text
    return text[:max_length] + "..."


@dataclass
class UsageEntry:
    request_type: str  # chat, embedding, vision, transcription
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    session_id: Optional[int] = None
    input_preview: Optional[str] = None
    output_preview: Optional[str] = None
    latency_ms: Optional[int] = None
    finish_reason: Optional[str] = None
    is_error: bool = False
    error_message: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def cost_usd(self) -> float:
        return calculate_cost(self.model, self.prompt_tokens, self.completion_tokens)

    @classmethod
    def for_chat(
        cls,
        *,
        provider: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        input_text: str,
        output_text: str,
        session_id: int | None = None,
        latency_ms: int | None = None,
        finish_reason: str | None = None,
        error: str | None = None,
    ) -> "UsageEntry":
        return cls(
            request_type="chat",
            provider=provider,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            session_id=session_id,
            input_preview=truncate_for_preview(input_text),
            output_preview=truncate_for_preview(output_text),
            latency_ms=latency_ms,
            finish_reason="error" if error else finish_reason,
            is_error=error is not None,
            error_message=error[:1000] if error else None,
        )

    @classmethod
    def for_embedding(
        cls,
        *,
        provider: str,
        model: str,
        input_text: str,
        session_id: int | None = None,
        latency_ms: int | None = None,
        error: str | None = None,
    ) -> "UsageEntry":
        return cls(
            request_type="embedding",
            provider=provider,
            model=model,
            prompt_tokens=estimate_tokens(input_text),
            session_id=session_id,
            input_preview=truncate_for_preview(input_text),
            latency_ms=latency_ms,
            is_error=error is not None,
            error_message=error[:1000] if error else None,
        )


class UsageLogger:
    """
    Persists UsageEntry rows.

    ``log_in_background`` schedules the insert and returns immediately;
    callers that are about to close the event loop should ``await drain()``.
    """

    def __init__(self, session_factory: Callable = AsyncSessionLocal):
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()

    async def log(self, entry: UsageEntry) -> None:
        try:
            async with self._session_factory() as db:
                db.add(LLMUsageLog(
                    session_id=entry.session_id,
                    request_type=entry.request_type,
                    provider=entry.provider,
                    model=entry.model,
                    prompt_tokens=entry.prompt_tokens,
                    completion_tokens=entry.completion_tokens,
                    total_tokens=entry.total_tokens,
                    cost_usd=entry.cost_usd,
                    input_preview=entry.input_preview,
                    output_preview=entry.output_preview,
                    latency_ms=entry.latency_ms,
                    finish_reason=entry.finish_reason,
                    is_error=entry.is_error,
                    error_message=entry.error_message,
                ))
                await db.commit()
        except Exception as e:
            logger.warning(
                "Failed to persist LLM usage",
                extra_data={
                    "request_type": entry.request_type,
                    "model": entry.model,
                    "error": str(e),
                }
            )

    def log_in_background(self, entry: UsageEntry) -> None:
        task = asyncio.create_task(self.log(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
