"""
Celery Tasks - the worker side of the message buffer and follow-up queue

Every task runs its async body in a fresh event loop with a task-scoped
database engine. Workers are stateless: all coordination goes through the
claim columns of pending_messages and followup_queue.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable

from app.core.config import settings
from app.core.exceptions import (
    ErrorCode,
    NotFoundException,
    TransientProviderError,
    ValidationException,
)
from app.core.logging import (
    bind_session_key_hash,
    get_logger,
    log_async_operation,
    set_correlation_id,
)
from app.db.database import get_task_session, get_task_session_factory
from app.db.models.contact import Contact
from app.db.models.conversation_session import ConversationSession
from app.db.models.followup_queue_item import FollowupQueueItem
from app.db.models.message import MessageDirection, MessageType
from app.domain.schemas import EngineOutput
from app.domain.services.conversation_engine import ConversationEngine, EngineDependencies
from app.domain.services.conversation_store import MessageStore, SessionStore
from app.domain.services.followup_service import FollowupService
from app.domain.services.llm import UsageLogger, create_embedding_provider, create_llm_provider
from app.domain.services.media_service import MediaService
from app.domain.services.message_buffer_service import MessageBufferService
from app.domain.services.notification_service import EscalationNotifier
from app.domain.services.whatsapp_sender import WhatsAppCloudSender, mask_phone
from app.state_machine import StateMachineManager
from app.state_machine.states import TERMINAL_STATES, ConversationState
from app.workers.celery_app import celery_app

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before closing
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def build_engine(db: "AsyncSession", session_factory: Callable) -> ConversationEngine:
    deps = EngineDependencies(
        llm_provider=create_llm_provider(),
        embedding_provider=create_embedding_provider(),
        media_service=MediaService(),
        notifier=EscalationNotifier(),
        usage_logger=UsageLogger(session_factory),
    )
    return ConversationEngine(db, deps)


async def deliver_output(sender: WhatsAppCloudSender, output: EngineOutput) -> int:
    """Send the replies of one turn in order; stops at the first failure"""
    session_key = output.session_key
    if session_key is None or not output.responses:
        return 0

    if session_key.channel_type != "whatsapp":
        logger.warning(
            "No sender for channel, replies not delivered",
            extra_data={"channel_type": session_key.channel_type, "session_id": output.session_id}
        )
        return 0

    sent = 0
    for response in output.responses:
        try:
            await sender.send_text(
                session_key.channel_user_id,
                response.content,
                phone_number_id=session_key.channel_id,
            )
        except TransientProviderError as e:
            logger.error(
                "Reply delivery failed",
                extra_data={
                    "session_id": output.session_id,
                    "to": mask_phone(session_key.channel_user_id),
                    "error": str(e),
                    "undelivered": len(output.responses) - sent,
                }
            )
            break
        sent += 1
    return sent


@log_async_operation("process_pending_batch")
async def process_pending_batch() -> dict:
    async with get_task_session_factory() as session_factory:
        async with session_factory() as db:
            buffer = MessageBufferService(db)
            hashes = await buffer.get_mature_sessions(limit=settings.PROCESS_PENDING_BATCH_SIZE)
            if not hashes:
                return {"sessions": 0, "processed": 0, "failed": 0, "has_more": False}

            engine = build_engine(db, session_factory)
            sender = WhatsAppCloudSender()
            processed = failed = delivered = 0

            for key_hash in hashes:
                bind_session_key_hash(key_hash)
                try:
                    output = await engine.process_pending_messages(key_hash)
                except Exception as e:
                    # Already released for retry by the engine
                    failed += 1
                    logger.error(
                        "Buffered group failed",
                        extra_data={"error": str(e)},
                        exc_info=True,
                    )
                    continue
                finally:
                    bind_session_key_hash(None)

                if output.session_id is not None:
                    processed += 1
                    delivered += await deliver_output(sender, output)

            await engine.drain()
            has_more = await buffer.has_pending_messages()

    return {
        "sessions": len(hashes),
        "processed": processed,
        "failed": failed,
        "delivered": delivered,
        "has_more": has_more,
    }


@celery_app.task(name="app.workers.tasks.process_pending_messages")
def process_pending_messages():
    """
    Process every mature buffer group.
    Re-queues itself while a full batch left work behind.
    """
    result = run_async(process_pending_batch())
    if result["has_more"] and result["sessions"] >= settings.PROCESS_PENDING_BATCH_SIZE:
        process_pending_messages.delay()
    return result


@celery_app.task(name="app.workers.tasks.cleanup_stale_messages")
def cleanup_stale_messages():
    """Dead-letter exhausted groups and release zombie locks"""

    async def _cleanup():
        async with get_task_session() as db:
            result = await MessageBufferService(db).cleanup_stale_messages()
            return {
                "dead_lettered": result.dead_lettered,
                "zombies_released": result.zombies_released,
            }

    return run_async(_cleanup())


async def send_followup(
    db: "AsyncSession",
    service: FollowupService,
    engine: ConversationEngine,
    sender: WhatsAppCloudSender,
    item: FollowupQueueItem,
) -> bool:
    """Render, send and record one claimed item. False when it was dropped."""
    session = await db.get(ConversationSession, item.session_id)
    if session is None:
        raise NotFoundException("Session", item.session_id, ErrorCode.SESSION_NOT_FOUND)

    if session.is_escalated:
        # A human owns the conversation
        await service.cancel_pending(session.id)
        logger.info("Follow-up dropped for escalated session", extra_data={"session_id": session.id})
        return False

    if session.channel_type != "whatsapp":
        raise ValidationException(f"No sender for channel {session.channel_type}", field="channel_type")

    contact = await db.get(Contact, session.contact_id)
    rendered = await service.render_message(item, session, contact, engine)

    if rendered.is_template:
        await sender.send_template(
            session.channel_user_id,
            rendered.template_name,
            rendered.parameters,
            phone_number_id=session.channel_id,
        )
    else:
        await sender.send_text(
            session.channel_user_id,
            rendered.content,
            phone_number_id=session.channel_id,
        )

    await MessageStore(db).save(
        session.id,
        MessageDirection.OUTBOUND,
        rendered.content,
        message_type=MessageType.TEMPLATE if rendered.is_template else MessageType.TEXT,
    )
    await service.mark_sent(item.id)

    updates = {"followup_index": item.sequence_index}
    follow_up = ConversationState.FOLLOW_UP.value
    if session.current_state in TERMINAL_STATES and session.current_state != follow_up:
        updates.update(previous_state=session.current_state, current_state=follow_up)
    await SessionStore(db).update(session, **updates)

    definition = await StateMachineManager(db).get_active_definition()
    state_config = definition.states.get(item.state or "")
    if state_config is not None:
        await service.schedule_next(
            session.id, item.state, item.sequence_index, state_config.followup_sequence
        )
    return True


@log_async_operation("process_followup_batch")
async def process_followup_batch() -> dict:
    async with get_task_session_factory() as session_factory:
        async with session_factory() as db:
            service = FollowupService(db)
            items = await service.get_due_items(settings.FOLLOWUP_BATCH_SIZE)
            if not items:
                return {"due": 0, "sent": 0, "skipped": 0, "failed": 0}

            engine = build_engine(db, session_factory)
            sender = WhatsAppCloudSender()
            sent = skipped = failed = 0

            # A failed item rolls the session back and expires every loaded row
            item_ids = [item.id for item in items]
            for item_id in item_ids:
                if not await service.claim(item_id):
                    skipped += 1
                    continue
                item = await db.get(FollowupQueueItem, item_id)
                try:
                    if await send_followup(db, service, engine, sender, item):
                        sent += 1
                    else:
                        skipped += 1
                except Exception as e:
                    failed += 1
                    await db.rollback()
                    await service.mark_failed(item_id, f"{type(e).__name__}: {e}")
                    logger.error(
                        "Follow-up failed",
                        extra_data={"followup_id": item_id, "error": str(e)},
                        exc_info=True,
                    )

            await engine.drain()

    return {"due": len(item_ids), "sent": sent, "skipped": skipped, "failed": failed}


@celery_app.task(name="app.workers.tasks.process_followups")
def process_followups():
    """Send due follow-ups"""
    return run_async(process_followup_batch())


@celery_app.task(name="app.workers.tasks.cleanup_followup_locks")
def cleanup_followup_locks():
    """Release stuck follow-up claims and fail exhausted items"""

    async def _cleanup():
        async with get_task_session() as db:
            result = await FollowupService(db).cleanup_stale_locks()
            return {
                "locks_released": result.locks_released,
                "dead_lettered": result.dead_lettered,
            }

    return run_async(_cleanup())
