"""
Conversation Engine - one inbound turn in, bot replies out

Pipeline per turn: media enrichment, identity, escalation hold, persistence,
deterministic escalation, retrieval (knowledge + examples), prompt, model
call with retry, parsing, state transition, context merge, replies and the
next follow-up.

The engine never raises for model trouble: provider errors and unusable
output are retried and finally answered with a fixed fallback message.
Persistence errors propagate so the message buffer can retry the group.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ConfigurationError, TransientProviderError
from app.core.logging import bind_session_key_hash, get_logger
from app.db.database import utcnow
from app.db.models.conversation_example import ExampleCategory
from app.db.models.conversation_session import ConversationSession, SessionStatus
from app.db.models.message import Message, MessageDirection, MessageType
from app.domain.schemas import (
    BotResponse,
    EngineOutput,
    EscalationResult,
    ImageAnalysis,
    NormalizedMessage,
    SessionKey,
    StructuredReply,
)
from app.domain.services.conversation_store import (
    ContactStore,
    EscalationStore,
    ExampleStore,
    KnowledgeStore,
    MessageStore,
    SessionStore,
)
from app.domain.services.escalation_service import (
    detect_escalation,
    escalation_response_text,
    from_model_recommendation,
)
from app.domain.services.followup_service import FollowupService
from app.domain.services.llm.base_provider import (
    BaseEmbeddingProvider,
    BaseLLMProvider,
    LLMMessage,
    LLMRequest,
    LLMResponse,
)
from app.domain.services.llm.usage_logger import UsageEntry, UsageLogger
from app.domain.services.media_service import MediaService
from app.domain.services.message_buffer_service import MessageBufferService
from app.domain.services.notification_service import (
    ALERT_SUMMARY_CHARS,
    EscalationAlert,
    EscalationNotifier,
)
from app.domain.services.prompt_builder import (
    BusinessProfile,
    build_followup_prompt,
    build_system_prompt,
    build_variable_prompt,
)
from app.domain.services.response_parser import parse_response
from app.state_machine import StateMachine, StateMachineConfig, StateMachineManager

logger = get_logger(__name__)

AUDIO_FAILED_PLACEHOLDER = "[Audio transcription failed]"
IMAGE_FAILED_PLACEHOLDER = "[Image analysis failed]"

SIMILAR_KNOWLEDGE_LIMIT = 3
CATEGORY_KNOWLEDGE_LIMIT = 2
MAX_RAG_CATEGORIES = 2
MAX_KNOWLEDGE_ENTRIES = 5
EXAMPLE_LIMIT = 2


@dataclass
class EngineDependencies:
    """Everything the engine talks to besides the database"""
    llm_provider: BaseLLMProvider
    embedding_provider: BaseEmbeddingProvider
    media_service: Optional[MediaService] = None
    notifier: Optional[EscalationNotifier] = None
    usage_logger: Optional[UsageLogger] = None
    business: BusinessProfile = field(default_factory=BusinessProfile.from_settings)


def format_history(messages: Sequence[Message]) -> List[LLMMessage]:
    return [
        LLMMessage(
            role="user" if m.direction == MessageDirection.INBOUND else "assistant",
            content=m.content,
        )
        for m in messages
        if m.content
    ]


def coalesce_messages(messages: Sequence[NormalizedMessage]) -> NormalizedMessage:
    """One message standing for a debounced burst: texts joined, last one's metadata"""
    if len(messages) == 1:
        return messages[0]
    texts = [m.text for m in messages if m.text]
    return messages[-1].model_copy(update={"content": "\n".join(texts)})


def _append_content(content: str | None, addition: str) -> str:
    return f"{content}\n{addition}" if content else addition


def dedupe_by_id(entries: Sequence[Any], limit: int) -> List[Any]:
    seen = set()
    unique = []
    for entry in entries:
        if entry.id in seen:
            continue
        seen.add(entry.id)
        unique.append(entry)
    return unique[:limit]


class ConversationEngine:

    def __init__(
        self,
        db: AsyncSession,
        deps: EngineDependencies,
        *,
        max_attempts: int | None = None,
        retry_delay_seconds: float | None = None,
    ):
        self.db = db
        self.deps = deps
        self.max_attempts = max_attempts or settings.LLM_MAX_ATTEMPTS
        self.retry_delay_seconds = (
            settings.LLM_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )

        self.contacts = ContactStore(db)
        self.sessions = SessionStore(db)
        self.messages = MessageStore(db)
        self.knowledge = KnowledgeStore(db)
        self.examples = ExampleStore(db)
        self.escalations = EscalationStore(db)
        self.followups = FollowupService(db)
        self.state_machines = StateMachineManager(db)

        self._background_tasks: set[asyncio.Task] = set()

    # ==================== Entry points ====================

    async def process_pending_messages(self, session_key_hash: str) -> EngineOutput:
        """
        Claim a mature buffer group and run it as a single turn.

        Returns an empty output when another worker holds the group. On any
        failure the group is released for retry and the error re-raised.
        """
        buffer = MessageBufferService(self.db)
        if not await buffer.claim_session(session_key_hash):
            return EngineOutput()

        rows = await buffer.get_by_session(session_key_hash)
        if not rows:
            return EngineOutput()

        bind_session_key_hash(session_key_hash)
        try:
            session_key = SessionKey.model_validate(rows[0].session_key)
            messages = [
                await self._enrich_media(NormalizedMessage.model_validate(row.message))
                for row in rows
            ]
            output = await self._run_turn(session_key, coalesce_messages(messages))
            await buffer.delete_by_ids([row.id for row in rows])
        except Exception as e:
            await self.db.rollback()
            await buffer.mark_for_retry(session_key_hash, f"{type(e).__name__}: {e}")
            raise

        logger.info(
            "Buffered messages processed",
            extra_data={"messages": len(rows), "responses": len(output.responses)}
        )
        return output

    async def process_message(
        self,
        session_key: SessionKey,
        message: NormalizedMessage,
    ) -> EngineOutput:
        return await self._run_turn(session_key, await self._enrich_media(message))

    async def _run_turn(
        self,
        session_key: SessionKey,
        message: NormalizedMessage,
    ) -> EngineOutput:
        """One turn for a message whose media has already been enriched"""
        definition = await self.state_machines.get_active_definition()
        contact = await self.contacts.find_or_create(session_key)
        session = await self.sessions.find_or_create(
            session_key, contact.id, definition.initial_state
        )
        now = utcnow()

        session_updates: dict[str, Any] = {}
        if session.is_escalated:
            last_activity = session.last_message_at or session.escalated_at
            # No recorded activity counts as idle since forever
            idle = now - last_activity if last_activity else timedelta.max
            if idle < timedelta(hours=settings.ESCALATION_RESUME_HOURS):
                # A human owns the conversation: record, stay silent
                await self._save_inbound(session.id, message)
                await self.sessions.update(session, last_message_at=now)
                logger.info(
                    "Session escalated, bot on hold",
                    extra_data={"session_id": session.id}
                )
                return EngineOutput(
                    session_id=session.id,
                    session_key=session_key,
                    session_updates={"last_message_at": now},
                )

            logger.info(
                "Escalated session idle, bot resumes",
                extra_data={"session_id": session.id, "idle_seconds": int(idle.total_seconds())}
            )
            session_updates.update(is_escalated=False, status=SessionStatus.ACTIVE)

        await self._save_inbound(session.id, message)
        await self.followups.cancel_pending(session.id)

        text = message.text
        # The current message is sent separately, keep it out of the history
        recent = await self.messages.get_recent(session.id, settings.HISTORY_LIMIT + 1)
        previous = [m for m in recent if m.platform_message_id != message.id]
        history = format_history(previous[-settings.HISTORY_LIMIT:])

        state_machine, state_reset = self._resolve_state_machine(session, definition)
        session_updates.update(state_reset)
        state_config = state_machine.get_config()

        escalation = detect_escalation(text)
        if escalation:
            escalation.summary = text[:ALERT_SUMMARY_CHARS]
            reply = BotResponse(
                content=escalation_response_text(escalation.reason),
                metadata={"escalation": True},
            )
            await self.messages.save(session.id, MessageDirection.OUTBOUND, reply.content)
            session_updates.update(await self._escalate(session, contact, session_key, escalation, text))
            session_updates["last_message_at"] = now
            await self.sessions.update(session, **session_updates)
            return EngineOutput(
                session_id=session.id,
                session_key=session_key,
                responses=[reply],
                session_updates=session_updates,
                escalation=escalation,
            )

        knowledge = await self._retrieve_knowledge(text, state_config.rag_categories, session.id)
        examples = await self._retrieve_examples(state_machine.current_state)

        system_prompt = build_system_prompt(
            self.deps.business,
            state_machine.build_transition_context(),
            knowledge,
            examples,
        )
        request = LLMRequest(
            system_prompt=system_prompt,
            messages=history + [LLMMessage(role="user", content=text)],
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
        )

        reply, llm_response = await self._generate_with_retry(request, session.id)

        if reply is None:
            fallback = BotResponse(content=settings.FALLBACK_MESSAGE, metadata={"fallback": True})
            await self.messages.save(session.id, MessageDirection.OUTBOUND, fallback.content)
            session_updates["last_message_at"] = now
            await self.sessions.update(session, **session_updates)
            return EngineOutput(
                session_id=session.id,
                session_key=session_key,
                responses=[fallback],
                session_updates=session_updates,
            )

        previous_state = state_machine.current_state
        self._apply_transition(state_machine, reply, session.id)
        if state_machine.current_state != previous_state:
            session_updates.update(
                previous_state=previous_state,
                current_state=state_machine.current_state,
            )

        if reply.extracted_data:
            session_updates["context"] = {**(session.context or {}), **reply.extracted_data}

        if reply.is_uncertain:
            logger.info("Model flagged uncertainty", extra_data={"session_id": session.id})

        transition_meta = reply.transition.model_dump() if reply.transition else None
        responses = [
            BotResponse(
                content=chunk,
                metadata={
                    "tokens_used": llm_response.usage.total_tokens if llm_response else 0,
                    "state": state_machine.current_state,
                    "transition": transition_meta,
                    "chunk_index": index,
                },
            )
            for index, chunk in enumerate(reply.responses)
        ]
        for response in responses:
            await self.messages.save(session.id, MessageDirection.OUTBOUND, response.content)

        model_escalation = from_model_recommendation(
            reply.escalation, settings.TRANSITION_CONFIDENCE_THRESHOLD
        )
        if model_escalation:
            if not model_escalation.summary:
                model_escalation.summary = text[:ALERT_SUMMARY_CHARS]
            session_updates.update(
                await self._escalate(session, contact, session_key, model_escalation, text)
            )

        session_updates.update(last_message_at=now, followup_index=-1)
        await self.sessions.update(session, **session_updates)

        if not model_escalation:
            new_config = state_machine.get_config()
            await self.followups.schedule_next(
                session.id, state_machine.current_state, -1, new_config.followup_sequence
            )

        return EngineOutput(
            session_id=session.id,
            session_key=session_key,
            responses=responses,
            session_updates=session_updates,
            escalation=model_escalation,
        )

    async def generate_followup(self, session_id: int) -> Optional[str]:
        """One proactive message for a quiet session; None if the model fails"""
        session = await self.sessions.get(session_id)
        definition = await self.state_machines.get_active_definition()
        state_machine, state_reset = self._resolve_state_machine(session, definition)
        if state_reset:
            await self.sessions.update(session, **state_reset)
        state_config = state_machine.get_config()

        history = format_history(await self.messages.get_recent(session.id, settings.HISTORY_LIMIT))
        request = LLMRequest(
            system_prompt=build_followup_prompt(
                self.deps.business,
                state_machine.current_state,
                state_config.objective,
                session.context,
            ),
            messages=history + [LLMMessage(
                role="user",
                content="[The customer has not replied since the last message]",
            )],
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=300,
        )
        response = await self._call_model(request, session.id)
        if response is None:
            return None
        reply = parse_response(response.content)
        return "\n\n".join(reply.responses) if reply else None

    async def generate_followup_variable(self, session_id: int, prompt: str) -> Optional[str]:
        """Resolve one template variable with a short model call"""
        session = await self.sessions.get(session_id)
        history = format_history(await self.messages.get_recent(session.id, settings.HISTORY_LIMIT))
        request = LLMRequest(
            system_prompt=build_variable_prompt(self.deps.business, prompt),
            messages=history + [LLMMessage(role="user", content=prompt)],
            temperature=0.2,
            max_tokens=100,
        )
        response = await self._call_model(request, session.id)
        if response is None:
            return None
        value = response.content.strip().strip('"').strip()
        return value or None

    async def drain(self) -> None:
        """Wait for background notifications and usage rows"""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        if self.deps.usage_logger:
            await self.deps.usage_logger.drain()

    # ==================== Pipeline steps ====================

    def _resolve_state_machine(
        self,
        session: ConversationSession,
        definition: StateMachineConfig,
    ) -> tuple[StateMachine, dict[str, Any]]:
        """
        State machine for the session, restarted at the initial state when
        the stored state no longer exists in the active definition.

        Returns the machine and the session updates recording a restart.
        """
        state_machine = StateMachine.from_session(session, definition)
        try:
            state_machine.get_config()
        except ConfigurationError as e:
            logger.error(
                "Session state unknown to active definition, restarting at initial state",
                extra_data={
                    "session_id": session.id,
                    "state": session.current_state,
                    "initial_state": definition.initial_state,
                    "error": e.message,
                }
            )
            return StateMachine(definition), {
                "previous_state": session.current_state,
                "current_state": definition.initial_state,
            }
        return state_machine, {}

    async def _enrich_media(self, message: NormalizedMessage) -> NormalizedMessage:
        media = self.deps.media_service
        if media is None or not message.media_url:
            return message

        if message.type == "audio" and not message.transcription:
            try:
                transcription = await media.transcribe(message.media_url)
            except TransientProviderError as e:
                logger.warning("Audio transcription failed", extra_data={"error": str(e)})
                return message.model_copy(update={
                    "content": _append_content(message.content, AUDIO_FAILED_PLACEHOLDER),
                })
            return message.model_copy(update={
                "transcription": transcription.text,
                "content": _append_content(message.content, transcription.text),
            })

        if message.type == "image" and message.image_analysis is None:
            try:
                analysis = await media.analyze_image(message.media_url)
            except TransientProviderError as e:
                logger.warning("Image analysis failed", extra_data={"error": str(e)})
                return message.model_copy(update={
                    "content": message.content or IMAGE_FAILED_PLACEHOLDER,
                })
            description = f"[Image Content: {analysis.description}]"
            return message.model_copy(update={
                "image_analysis": ImageAnalysis(
                    description=analysis.description,
                    extracted_text=analysis.detected_text,
                ),
                "content": f"{message.content}\n\n{description}" if message.content else description,
            })

        return message

    async def _save_inbound(self, session_id: int, message: NormalizedMessage) -> None:
        # A retried buffer group must not duplicate history
        existing = await self.db.execute(
            select(Message.id).where(
                Message.session_id == session_id,
                Message.platform_message_id == message.id,
            ).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            return

        await self.messages.save(
            session_id,
            MessageDirection.INBOUND,
            message.content,
            message_type=MessageType(message.type),
            media_url=message.media_url,
            transcription=message.transcription,
            image_analysis=message.image_analysis.model_dump() if message.image_analysis else None,
            platform_message_id=message.id,
        )

    async def _retrieve_knowledge(
        self,
        text: str,
        categories: Sequence[str],
        session_id: int,
    ) -> List[Any]:
        similar: List[Any] = []
        if text:
            embedding = await self._embed(text, session_id)
            if embedding:
                similar = await self.knowledge.find_similar(embedding, SIMILAR_KNOWLEDGE_LIMIT)

        by_category: List[Any] = []
        for category in list(categories)[:MAX_RAG_CATEGORIES]:
            by_category.extend(
                await self.knowledge.find_by_category(category, CATEGORY_KNOWLEDGE_LIMIT)
            )

        return dedupe_by_id(similar + by_category, MAX_KNOWLEDGE_ENTRIES)

    async def _retrieve_examples(self, state: str) -> List[Any]:
        examples = await self.examples.find_by_state(
            state, category=ExampleCategory.HAPPY_PATH, limit=EXAMPLE_LIMIT
        )
        if examples:
            return examples
        return await self.examples.find_by_state(state, limit=EXAMPLE_LIMIT)

    async def _embed(self, text: str, session_id: int) -> Optional[List[float]]:
        provider = self.deps.embedding_provider
        started = time.monotonic()
        error = None
        embedding = None
        try:
            embedding = await provider.generate_embedding(text)
        except TransientProviderError as e:
            # Retrieval is an enhancement; the turn goes on without it
            error = str(e)
            logger.warning(
                "Embedding failed, continuing without similarity search",
                extra_data={"error": error}
            )

        self._log_usage(UsageEntry.for_embedding(
            provider=provider.name,
            model=provider.model,
            input_text=text,
            session_id=session_id,
            latency_ms=int((time.monotonic() - started) * 1000),
            error=error,
        ))
        return embedding

    async def _call_model(self, request: LLMRequest, session_id: int | None) -> Optional[LLMResponse]:
        provider = self.deps.llm_provider
        started = time.monotonic()
        input_text = request.system_prompt + "\n\n" + "\n".join(
            f"{m.role}: {m.content}" for m in request.messages
        )
        try:
            response = await provider.generate_response(request)
        except TransientProviderError as e:
            logger.warning(
                "LLM call failed",
                extra_data={"provider": provider.name, "error": str(e)}
            )
            self._log_usage(UsageEntry.for_chat(
                provider=provider.name,
                model=provider.model,
                prompt_tokens=0,
                completion_tokens=0,
                input_text=input_text,
                output_text="",
                session_id=session_id,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=str(e),
            ))
            return None

        self._log_usage(UsageEntry.for_chat(
            provider=response.provider or provider.name,
            model=response.model or provider.model,
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            input_text=input_text,
            output_text=response.content,
            session_id=session_id,
            latency_ms=int((time.monotonic() - started) * 1000),
            finish_reason=response.finish_reason,
        ))
        return response

    async def _generate_with_retry(
        self,
        request: LLMRequest,
        session_id: int,
    ) -> tuple[Optional[StructuredReply], Optional[LLMResponse]]:
        for attempt in range(1, self.max_attempts + 1):
            response = await self._call_model(request, session_id)
            reply = parse_response(response.content, allow_raw_text=False) if response else None
            if reply is not None:
                return reply, response

            logger.warning(
                "No usable model reply",
                extra_data={"attempt": attempt, "max_attempts": self.max_attempts}
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay_seconds)

        logger.error(
            "Model retries exhausted, sending fallback message",
            extra_data={"session_id": session_id, "attempts": self.max_attempts}
        )
        return None, None

    def _apply_transition(
        self,
        state_machine: StateMachine,
        reply: StructuredReply,
        session_id: int,
    ) -> None:
        transition = reply.transition
        if transition is None:
            return

        threshold = settings.TRANSITION_CONFIDENCE_THRESHOLD
        if transition.confidence < threshold or not state_machine.can_transition_to(transition.to):
            logger.info(
                "Transition recommendation ignored",
                extra_data={
                    "session_id": session_id,
                    "from": state_machine.current_state,
                    "to": transition.to,
                    "confidence": transition.confidence,
                }
            )
            return

        applied = state_machine.transition_to(transition.to, transition.reason)
        logger.info(
            "State transition",
            extra_data={
                "session_id": session_id,
                "from": applied.from_state,
                "to": applied.to_state,
                "reason": applied.reason,
            }
        )

    async def _escalate(
        self,
        session: ConversationSession,
        contact: Any,
        session_key: SessionKey,
        escalation: EscalationResult,
        text: str,
    ) -> dict[str, Any]:
        """Record the hand-off, alert an agent, return the session changes"""
        await self.escalations.create(session.id, escalation)

        if settings.ESCALATION_ENABLED and settings.ESCALATION_NOTIFY_WHATSAPP and self.deps.notifier:
            alert = EscalationAlert(
                reason=escalation.reason,
                user_name=contact.full_name or contact.phone or "Unknown User",
                user_phone=contact.phone or session_key.channel_user_id,
                summary=(escalation.summary or text)[:ALERT_SUMMARY_CHARS],
                session_id=session.id,
            )
            self._run_in_background(self._notify(alert))

        logger.warning(
            "Conversation escalated",
            extra_data={
                "session_id": session.id,
                "reason": escalation.reason,
                "confidence": escalation.confidence,
            }
        )
        return {
            "is_escalated": True,
            "escalation_reason": escalation.reason,
            "escalated_at": utcnow(),
            "status": SessionStatus.PAUSED,
        }

    async def _notify(self, alert: EscalationAlert) -> None:
        try:
            await self.deps.notifier.send_escalation_alert(
                settings.ESCALATION_NOTIFY_WHATSAPP, alert
            )
        except Exception as e:
            logger.error(
                "Escalation alert failed",
                extra_data={"session_id": alert.session_id, "error": str(e)}
            )

    def _run_in_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _log_usage(self, entry: UsageEntry) -> None:
        if self.deps.usage_logger:
            self.deps.usage_logger.log_in_background(entry)
