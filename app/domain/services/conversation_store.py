"""
Conversation stores - persistence helpers used by the engine

Thin wrappers over the async session so the engine can be driven with mocks
in tests. Each store commits its own writes.
"""
import math
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ErrorCode, NotFoundException, PersistenceError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.contact import Contact
from app.db.models.conversation_example import ConversationExample, ExampleCategory
from app.db.models.conversation_session import ConversationSession
from app.db.models.escalation import Escalation
from app.db.models.knowledge_entry import KnowledgeEntry
from app.db.models.message import Message, MessageDirection, MessageType
from app.domain.schemas import EscalationResult, SessionKey

logger = get_logger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class ContactStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, contact_id: int) -> Optional[Contact]:
        return await self.db.get(Contact, contact_id)

    async def find_or_create(self, session_key: SessionKey) -> Contact:
        query = select(Contact).where(
            Contact.channel_type == session_key.channel_type,
            Contact.channel_user_id == session_key.channel_user_id,
        )
        result = await self.db.execute(query)
        contact = result.scalar_one_or_none()
        if contact:
            return contact

        contact = Contact(
            channel_type=session_key.channel_type,
            channel_user_id=session_key.channel_user_id,
            # wa_id is the phone number in international format
            phone=session_key.channel_user_id if session_key.channel_type == "whatsapp" else None,
        )
        self.db.add(contact)
        try:
            await self.db.commit()
        except IntegrityError:
            # Created concurrently by another worker
            await self.db.rollback()
            result = await self.db.execute(query)
            return result.scalar_one()

        await self.db.refresh(contact)
        logger.info(
            "Contact created",
            extra_data={"contact_id": contact.id, "channel_type": contact.channel_type}
        )
        return contact


class SessionStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, session_id: int) -> ConversationSession:
        session = await self.db.get(ConversationSession, session_id)
        if session is None:
            raise NotFoundException("Session", session_id, ErrorCode.SESSION_NOT_FOUND)
        return session

    async def find(self, session_key: SessionKey) -> Optional[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession).where(
                ConversationSession.channel_type == session_key.channel_type,
                ConversationSession.channel_id == session_key.channel_id,
                ConversationSession.channel_user_id == session_key.channel_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_or_create(
        self,
        session_key: SessionKey,
        contact_id: int,
        initial_state: str,
    ) -> ConversationSession:
        session = await self.find(session_key)
        if session:
            return session

        session = ConversationSession(
            contact_id=contact_id,
            channel_type=session_key.channel_type,
            channel_id=session_key.channel_id,
            channel_user_id=session_key.channel_user_id,
            current_state=initial_state,
            context={},
        )
        self.db.add(session)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.find(session_key)
            if existing is None:
                raise PersistenceError("create_session", "Session insert conflicted but no row found")
            return existing

        await self.db.refresh(session)
        logger.info(
            "Session created",
            extra_data={"session_id": session.id, "state": initial_state}
        )
        return session

    async def update(self, session: ConversationSession, **changes) -> ConversationSession:
        for key, value in changes.items():
            setattr(session, key, value)
        await self.db.commit()
        await self.db.refresh(session)
        return session


class MessageStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(
        self,
        session_id: int,
        direction: MessageDirection,
        content: str | None,
        message_type: MessageType = MessageType.TEXT,
        media_url: str | None = None,
        transcription: str | None = None,
        image_analysis: dict | None = None,
        platform_message_id: str | None = None,
    ) -> Message:
        message = Message(
            session_id=session_id,
            direction=direction,
            message_type=message_type,
            content=content,
            media_url=media_url,
            transcription=transcription,
            image_analysis=image_analysis,
            platform_message_id=platform_message_id,
            created_at=utcnow(),
        )
        self.db.add(message)
        await self.db.commit()
        return message

    async def get_recent(self, session_id: int, limit: int) -> List[Message]:
        """Latest ``limit`` messages, oldest first"""
        result = await self.db.execute(
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))


class KnowledgeStore:
    """Knowledge base lookups; similarity is computed over stored vectors"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_similar(self, embedding: Sequence[float], limit: int) -> List[KnowledgeEntry]:
        result = await self.db.execute(
            select(KnowledgeEntry).where(
                KnowledgeEntry.is_active == True,  # noqa: E712
                KnowledgeEntry.embedding.is_not(None),
            )
        )
        scored = [
            (cosine_similarity(embedding, entry.embedding or []), entry)
            for entry in result.scalars().all()
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [entry for _, entry in scored[:limit]]

    async def find_by_category(self, category: str, limit: int) -> List[KnowledgeEntry]:
        result = await self.db.execute(
            select(KnowledgeEntry)
            .where(
                KnowledgeEntry.category == category,
                KnowledgeEntry.is_active == True,  # noqa: E712
            )
            .order_by(KnowledgeEntry.id)
            .limit(limit)
        )
        return list(result.scalars().all())


class ExampleStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_state(
        self,
        state: str,
        category: ExampleCategory | None = None,
        limit: int = 2,
    ) -> List[ConversationExample]:
        query = select(ConversationExample).where(
            ConversationExample.primary_state == state,
            ConversationExample.is_active == True,  # noqa: E712
        )
        if category is not None:
            query = query.where(ConversationExample.category == category)
        result = await self.db.execute(query.order_by(ConversationExample.id).limit(limit))
        return list(result.scalars().all())


class EscalationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, session_id: int, escalation: EscalationResult) -> Escalation:
        record = Escalation(
            session_id=session_id,
            reason=escalation.reason,
            priority=escalation.priority,
            confidence=escalation.confidence,
            summary=escalation.summary,
        )
        self.db.add(record)
        await self.db.commit()
        logger.info(
            "Escalation recorded",
            extra_data={
                "session_id": session_id,
                "reason": escalation.reason,
                "priority": escalation.priority,
            }
        )
        return record
