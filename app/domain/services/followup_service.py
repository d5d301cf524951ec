"""
Follow-up Service - scheduled proactive messages

Each state carries a sequence of intervals ("15m", "1d", "3d"). After every
bot turn the next step of the sequence for the session's state is queued;
any inbound message cancels what is still pending. Items are claimed with the
same conditional-UPDATE lock as the message buffer.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.followup_config import FollowupConfig, FollowupConfigType
from app.db.models.followup_queue_item import FollowupQueueItem, FollowupStatus
from app.domain.services.template_utils import (
    get_nested_property,
    substitute_template_variables,
)
from app.state_machine.states import FollowupStep

if TYPE_CHECKING:
    from app.db.models.contact import Contact
    from app.db.models.conversation_session import ConversationSession

logger = get_logger(__name__)

_INTERVAL_PATTERN = re.compile(r"^\s*(\d+)\s*([a-z]+)\s*$", re.IGNORECASE)

_UNIT_MINUTES = {
    "m": 1, "min": 1, "mins": 1, "minute": 1, "minutes": 1,
    "h": 60, "hr": 60, "hrs": 60, "hour": 60, "hours": 60,
    "d": 1440, "day": 1440, "days": 1440,
    "w": 10080, "week": 10080, "weeks": 10080,
}

DEFAULT_FOLLOWUP_MESSAGES = [
    "Hola! 👋 Sigues ahí? Avísame si tienes alguna duda.",
    "Hola! Espero que estés teniendo un buen día. "
    "Quedo atento por si quieres retomar la conversación.",
]
FINAL_FOLLOWUP_MESSAGE = "Hola! Solo pasaba para ver si necesitas algo más. Saludos!"


def parse_interval_to_minutes(interval: str | None) -> int:
    """'2h' -> 120, '3 days' -> 4320; anything unparseable -> 0"""
    if not interval:
        return 0
    match = _INTERVAL_PATTERN.match(interval)
    if not match:
        return 0
    value, unit = match.groups()
    return int(value) * _UNIT_MINUTES.get(unit.lower(), 0)


def calculate_scheduled_time(interval: str, from_time: datetime | None = None) -> datetime:
    return (from_time or utcnow()) + timedelta(minutes=parse_interval_to_minutes(interval))


def default_followup_message(sequence_index: int) -> str:
    if 0 <= sequence_index < len(DEFAULT_FOLLOWUP_MESSAGES):
        return DEFAULT_FOLLOWUP_MESSAGES[sequence_index]
    return FINAL_FOLLOWUP_MESSAGE


@dataclass
class RenderedFollowup:
    """Resolved body of a follow-up, ready for the channel sender"""
    content: str
    template_name: str | None = None
    parameters: List[str] = field(default_factory=list)

    @property
    def is_template(self) -> bool:
        return self.template_name is not None


@dataclass
class FollowupCleanupResult:
    locks_released: int = 0
    dead_lettered: int = 0


class FollowupService:
    """Scheduling and lifecycle of followup_queue rows"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        max_retries: int | None = None,
        lock_timeout_seconds: int | None = None,
    ):
        self.db = db
        self.max_retries = max_retries or settings.FOLLOWUP_MAX_RETRIES
        self.lock_timeout_seconds = (
            lock_timeout_seconds or settings.FOLLOWUP_LOCK_TIMEOUT_SECONDS
        )

    async def schedule_next(
        self,
        session_id: int,
        state: str,
        current_index: int,
        sequence: Sequence[FollowupStep],
    ) -> Optional[FollowupQueueItem]:
        """Queue step ``current_index + 1`` of ``sequence``, if there is one"""
        next_index = current_index + 1
        if next_index < 0 or next_index >= len(sequence):
            logger.debug(
                "Follow-up sequence complete",
                extra_data={"session_id": session_id, "state": state, "index": next_index}
            )
            return None

        step = sequence[next_index]
        minutes = parse_interval_to_minutes(step.interval)
        if minutes <= 0:
            logger.warning(
                "Invalid follow-up interval, nothing scheduled",
                extra_data={"session_id": session_id, "state": state, "interval": step.interval}
            )
            return None

        item = FollowupQueueItem(
            session_id=session_id,
            scheduled_at=utcnow() + timedelta(minutes=minutes),
            sequence_index=next_index,
            state=state,
            followup_config_name=step.config_name,
            status=FollowupStatus.PENDING,
        )
        self.db.add(item)
        await self.db.commit()

        logger.info(
            "Follow-up scheduled",
            extra_data={
                "session_id": session_id,
                "state": state,
                "sequence_index": next_index,
                "interval": step.interval,
                "scheduled_at": item.scheduled_at.isoformat(),
            }
        )
        return item

    async def get_due_items(self, limit: int | None = None) -> List[FollowupQueueItem]:
        result = await self.db.execute(
            select(FollowupQueueItem)
            .where(
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.processing_started_at.is_(None),
                FollowupQueueItem.scheduled_at <= utcnow(),
                FollowupQueueItem.retry_count < self.max_retries,
            )
            .order_by(FollowupQueueItem.scheduled_at, FollowupQueueItem.id)
            .limit(limit or settings.FOLLOWUP_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def claim(self, item_id: int) -> bool:
        """Atomic lock on one pending item; False if someone else holds it"""
        result = await self.db.execute(
            update(FollowupQueueItem)
            .where(
                FollowupQueueItem.id == item_id,
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.processing_started_at.is_(None),
            )
            .values(processing_started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return (result.rowcount or 0) > 0

    async def mark_sent(self, item_id: int) -> None:
        await self.db.execute(
            update(FollowupQueueItem)
            .where(FollowupQueueItem.id == item_id)
            .values(
                status=FollowupStatus.SENT,
                sent_at=utcnow(),
                processing_started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def mark_failed(self, item_id: int, error: str) -> None:
        """Release the lock and count the failure; the last allowed one is final"""
        await self.db.execute(
            update(FollowupQueueItem)
            .where(FollowupQueueItem.id == item_id)
            .values(
                processing_started_at=None,
                retry_count=FollowupQueueItem.retry_count + 1,
                error_message=error[:1000],
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(FollowupQueueItem)
            .where(
                FollowupQueueItem.id == item_id,
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.retry_count >= self.max_retries,
            )
            .values(status=FollowupStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.warning(
            "Follow-up delivery failed",
            extra_data={"followup_id": item_id, "error": error[:200]}
        )

    async def cleanup_stale_locks(self) -> FollowupCleanupResult:
        cutoff = utcnow() - timedelta(seconds=self.lock_timeout_seconds)
        released = await self.db.execute(
            update(FollowupQueueItem)
            .where(
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.processing_started_at.is_not(None),
                FollowupQueueItem.processing_started_at < cutoff,
            )
            .values(processing_started_at=None)
            .execution_options(synchronize_session=False)
        )
        dead = await self.db.execute(
            update(FollowupQueueItem)
            .where(
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.retry_count >= self.max_retries,
            )
            .values(status=FollowupStatus.FAILED, processing_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        cleanup = FollowupCleanupResult(
            locks_released=released.rowcount or 0,
            dead_lettered=dead.rowcount or 0,
        )
        if cleanup.locks_released or cleanup.dead_lettered:
            logger.warning(
                "Follow-up queue cleanup",
                extra_data={
                    "locks_released": cleanup.locks_released,
                    "dead_lettered": cleanup.dead_lettered,
                }
            )
        return cleanup

    async def cancel_pending(self, session_id: int) -> int:
        result = await self.db.execute(
            update(FollowupQueueItem)
            .where(
                FollowupQueueItem.session_id == session_id,
                FollowupQueueItem.status == FollowupStatus.PENDING,
            )
            .values(status=FollowupStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        cancelled = result.rowcount or 0
        if cancelled:
            logger.info(
                "Pending follow-ups cancelled",
                extra_data={"session_id": session_id, "count": cancelled}
            )
        return cancelled

    async def get_config(self, name: str | None) -> Optional[FollowupConfig]:
        if not name:
            return None
        result = await self.db.execute(
            select(FollowupConfig).where(
                FollowupConfig.name == name,
                FollowupConfig.is_active == True,  # noqa: E712
            )
        )
        return result.scalar_one_or_none()

    async def render_message(
        self,
        item: FollowupQueueItem,
        session: "ConversationSession",
        contact: "Contact | None",
        engine: Any = None,
    ) -> RenderedFollowup:
        """
        Build the text (or template parameters) of a due item.

        Variables are resolved now, not at scheduling time, so they see the
        latest contact and session data. ``engine`` provides the model for
        ``llm`` bindings and for items without a stored config.
        """
        config = await self.get_config(item.followup_config_name)

        if config is None:
            if engine is not None:
                text = await engine.generate_followup(session.id)
                if text:
                    return RenderedFollowup(content=text)
            return RenderedFollowup(content=default_followup_message(item.sequence_index))

        variables = {}
        for binding in config.variables_config or []:
            variables[binding["key"]] = await self._resolve_variable(
                binding, session, contact, engine
            )

        if config.config_type == FollowupConfigType.TEMPLATE:
            parameters = [variables.get(b["key"], "") for b in config.variables_config or []]
            return RenderedFollowup(
                content=config.content,
                template_name=config.content,
                parameters=parameters,
            )

        return RenderedFollowup(
            content=substitute_template_variables(config.content, session, contact, variables)
        )

    async def _resolve_variable(
        self,
        binding: dict,
        session: "ConversationSession",
        contact: "Contact | None",
        engine: Any,
    ) -> str:
        kind = binding.get("type", "literal")

        if kind == "literal":
            return str(binding.get("value", ""))

        if kind in ("path", "context"):
            path = binding.get("field") or binding.get("value") or binding["key"]
            if path.startswith("contact."):
                value = get_nested_property(contact, path[len("contact."):])
            elif path.startswith("session."):
                value = get_nested_property(session, path[len("session."):])
            else:
                value = get_nested_property(session.context or {}, path)
            if value is None:
                value = binding.get("default", "")
            return str(value)

        if kind == "llm":
            if engine is None:
                return str(binding.get("default", ""))
            value = await engine.generate_followup_variable(session.id, binding.get("prompt", ""))
            return value or str(binding.get("default", ""))

        logger.warning(
            "Unknown follow-up variable type",
            extra_data={"key": binding.get("key"), "type": kind}
        )
        return str(binding.get("default", ""))

    async def get_summary(self) -> dict[str, int]:
        """Counts per status plus the current claim/due figures"""
        result = await self.db.execute(
            select(FollowupQueueItem.status, func.count(FollowupQueueItem.id))
            .group_by(FollowupQueueItem.status)
        )
        summary = {status.value: 0 for status in FollowupStatus}
        for status, count in result.all():
            summary[FollowupStatus(status).value] = count

        processing = await self.db.scalar(
            select(func.count(FollowupQueueItem.id)).where(
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.processing_started_at.is_not(None),
            )
        )
        due = await self.db.scalar(
            select(func.count(FollowupQueueItem.id)).where(
                FollowupQueueItem.status == FollowupStatus.PENDING,
                FollowupQueueItem.processing_started_at.is_(None),
                FollowupQueueItem.scheduled_at <= utcnow(),
            )
        )
        summary["total"] = sum(summary.values())
        summary["processing"] = processing or 0
        summary["due"] = due or 0
        return summary
