"""
Conversation Session Model - one thread per channel identity
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, JSON, Boolean,
    Enum as SQLEnum, UniqueConstraint,
)

from app.db.database import Base, utcnow


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"
    ARCHIVED = "archived"


class ConversationSession(Base):
    """State machine position and accumulated context for one conversation"""

    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint(
            "channel_type", "channel_id", "channel_user_id",
            name="uq_sessions_channel_identity",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)

    # Identity
    channel_type = Column(String(20), nullable=False)  # whatsapp, instagram, messenger
    channel_id = Column(String(100), nullable=False)  # phone_number_id / page id
    channel_user_id = Column(String(100), nullable=False)  # wa_id / psid

    # State machine
    current_state = Column(String(100), nullable=False, default="initial")
    previous_state = Column(String(100), nullable=True)

    # Facts extracted by the model, merged additively
    context = Column(JSON, default=dict)

    status = Column(SQLEnum(SessionStatus), default=SessionStatus.ACTIVE, nullable=False)

    # Escalation (a human agent owns the conversation while set)
    is_escalated = Column(Boolean, default=False, nullable=False)
    escalation_reason = Column(String(50), nullable=True)
    escalated_at = Column(DateTime, nullable=True)

    # Position in the current state's follow-up sequence
    followup_index = Column(Integer, default=-1, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_message_at = Column(DateTime, nullable=True)
