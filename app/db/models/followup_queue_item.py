"""
Follow-up Queue Model - scheduled proactive messages

Same claim discipline as the debounce buffer: processing_started_at is the
lock marker and retry_count drives the dead-letter cut-off.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum, Index

from app.db.database import Base, utcnow


class FollowupStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class FollowupQueueItem(Base):
    __tablename__ = "followup_queue"
    __table_args__ = (
        Index("ix_followup_queue_due", "status", "scheduled_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)

    scheduled_at = Column(DateTime, nullable=False)
    sequence_index = Column(Integer, nullable=False, default=0)
    state = Column(String(100), nullable=True)  # state whose sequence produced the item
    followup_config_name = Column(String(100), nullable=True)

    status = Column(SQLEnum(FollowupStatus), default=FollowupStatus.PENDING, nullable=False)

    processing_started_at = Column(DateTime, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
