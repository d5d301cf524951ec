"""
Message Buffer Service - debounced, lockable inbound queue

Bursts of messages from one conversation collapse into a single processing
pass. Coordination between workers happens only through conditional UPDATEs
on ``processing_started_at``; nothing is held in process memory.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import timedelta
from typing import List

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.pending_message import PendingMessage
from app.domain.schemas import NormalizedMessage, SessionKey

logger = get_logger(__name__)


def compute_session_key_hash(session_key: SessionKey) -> str:
    """Stable grouping key for a channel identity"""
    raw = f"{session_key.channel_type}:{session_key.channel_id}:{session_key.channel_user_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def mature_predicate(now, max_retries: int):
    """
    Rows that are actionable right now.

    get_mature_sessions() and has_pending_messages() must both use this; if
    they disagree the worker keeps re-invoking itself for work it never picks.
    """
    return and_(
        PendingMessage.scheduled_process_at <= now,
        PendingMessage.processing_started_at.is_(None),
        PendingMessage.retry_count < max_retries,
    )


@dataclass
class CleanupResult:
    dead_lettered: int = 0
    zombies_released: int = 0


class MessageBufferService:
    """Debounce buffer over the pending_messages table"""

    def __init__(
        self,
        db: AsyncSession,
        *,
        max_retries: int | None = None,
        zombie_threshold_seconds: int | None = None,
    ):
        self.db = db
        self.max_retries = max_retries or settings.MESSAGE_BUFFER_MAX_RETRIES
        self.zombie_threshold_seconds = (
            zombie_threshold_seconds or settings.ZOMBIE_THRESHOLD_SECONDS
        )

    async def add(
        self,
        session_key: SessionKey,
        message: NormalizedMessage,
        debounce_ms: int | None = None,
    ) -> PendingMessage:
        """
        Buffer a message and push the whole group's deadline to now + debounce.

        There is no upper bound on how long a chatty burst can postpone
        processing.
        """
        if debounce_ms is None:
            debounce_ms = settings.DEBOUNCE_MS

        now = utcnow()
        scheduled_process_at = now + timedelta(milliseconds=debounce_ms)
        key_hash = compute_session_key_hash(session_key)

        row = PendingMessage(
            session_key_hash=key_hash,
            session_key=session_key.model_dump(),
            message=message.model_dump(mode="json"),
            received_at=now,
            scheduled_process_at=scheduled_process_at,
        )
        self.db.add(row)
        await self.db.flush()

        # Claimed rows keep their schedule; only the waiting group is reset
        await self.db.execute(
            update(PendingMessage)
            .where(
                PendingMessage.session_key_hash == key_hash,
                PendingMessage.processing_started_at.is_(None),
            )
            .values(scheduled_process_at=scheduled_process_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.debug(
            "Message buffered",
            extra_data={
                "session_key_hash": key_hash[:12],
                "pending_message_id": row.id,
                "scheduled_process_at": scheduled_process_at.isoformat(),
            }
        )
        return row

    async def get_mature_sessions(self, limit: int | None = None) -> List[str]:
        """Distinct hashes with actionable work, oldest deadline first"""
        query = (
            select(PendingMessage.session_key_hash)
            .where(mature_predicate(utcnow(), self.max_retries))
            .group_by(PendingMessage.session_key_hash)
            .order_by(func.min(PendingMessage.scheduled_process_at))
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return [row[0] for row in result.all()]

    async def has_pending_messages(self) -> bool:
        result = await self.db.execute(
            select(exists().where(mature_predicate(utcnow(), self.max_retries)))
        )
        return bool(result.scalar())

    async def claim_session(self, session_key_hash: str) -> bool:
        """
        Take the lock on every free row of the group.

        A single conditional UPDATE; returns False when another worker got
        there first. Dead-lettered rows are left alone for the cleanup sweep.
        """
        result = await self.db.execute(
            update(PendingMessage)
            .where(
                PendingMessage.session_key_hash == session_key_hash,
                PendingMessage.processing_started_at.is_(None),
                PendingMessage.retry_count < self.max_retries,
            )
            .values(processing_started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        claimed = (result.rowcount or 0) > 0
        if not claimed:
            logger.info(
                "Session already claimed by another worker",
                extra_data={"session_key_hash": session_key_hash[:12]}
            )
        return claimed

    async def get_by_session(
        self,
        session_key_hash: str,
        *,
        claimed_only: bool = True,
    ) -> List[PendingMessage]:
        """Rows of a group in arrival order"""
        query = select(PendingMessage).where(
            PendingMessage.session_key_hash == session_key_hash
        )
        if claimed_only:
            query = query.where(PendingMessage.processing_started_at.is_not(None))
        result = await self.db.execute(
            query.order_by(PendingMessage.received_at, PendingMessage.id)
        )
        return list(result.scalars().all())

    async def delete_by_ids(self, ids: List[int]) -> int:
        if not ids:
            return 0
        result = await self.db.execute(
            delete(PendingMessage)
            .where(PendingMessage.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def mark_for_retry(self, session_key_hash: str, error: str) -> int:
        """
        Release the claimed rows and count the failure.

        scheduled_process_at is not touched: it is already in the past, so the
        group is immediately mature again until it reaches max_retries.
        """
        result = await self.db.execute(
            update(PendingMessage)
            .where(
                PendingMessage.session_key_hash == session_key_hash,
                PendingMessage.processing_started_at.is_not(None),
            )
            .values(
                processing_started_at=None,
                retry_count=PendingMessage.retry_count + 1,
                last_error=error[:1000],
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.warning(
            "Buffered group marked for retry",
            extra_data={
                "session_key_hash": session_key_hash[:12],
                "rows": result.rowcount,
                "error": error[:200],
            }
        )
        return result.rowcount or 0

    async def cleanup_stale_messages(self) -> CleanupResult:
        """Dead-letter sweep plus zombie-lock release; must run on its own timer"""
        dead = await self.db.execute(
            delete(PendingMessage)
            .where(PendingMessage.retry_count >= self.max_retries)
            .execution_options(synchronize_session=False)
        )

        zombie_cutoff = utcnow() - timedelta(seconds=self.zombie_threshold_seconds)
        released = await self.db.execute(
            update(PendingMessage)
            .where(
                PendingMessage.processing_started_at.is_not(None),
                PendingMessage.processing_started_at < zombie_cutoff,
            )
            .values(processing_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        cleanup = CleanupResult(
            dead_lettered=dead.rowcount or 0,
            zombies_released=released.rowcount or 0,
        )
        if cleanup.dead_lettered or cleanup.zombies_released:
            logger.warning(
                "Message buffer cleanup",
                extra_data={
                    "dead_lettered": cleanup.dead_lettered,
                    "zombies_released": cleanup.zombies_released,
                }
            )
        return cleanup

    async def get_summary(self) -> dict[str, int]:
        """Counts for the admin debug endpoint"""
        now = utcnow()
        total = await self.db.scalar(select(func.count(PendingMessage.id)))
        waiting = await self.db.scalar(
            select(func.count(PendingMessage.id)).where(
                PendingMessage.processing_started_at.is_(None),
                PendingMessage.retry_count < self.max_retries,
            )
        )
        mature = await self.db.scalar(
            select(func.count(PendingMessage.id)).where(
                mature_predicate(now, self.max_retries)
            )
        )
        processing = await self.db.scalar(
            select(func.count(PendingMessage.id)).where(
                PendingMessage.processing_started_at.is_not(None)
            )
        )
        dead_lettered = await self.db.scalar(
            select(func.count(PendingMessage.id)).where(
                PendingMessage.retry_count >= self.max_retries
            )
        )
        return {
            "total": total or 0,
            "waiting": waiting or 0,
            "mature": mature or 0,
            "processing": processing or 0,
            "dead_lettered": dead_lettered or 0,
        }
