"""
Pending Message Model - debounce buffer rows

A NULL processing_started_at means the row is free; a timestamp means a
worker claimed the group at that moment.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from app.db.database import Base, utcnow


class PendingMessage(Base):
    """One inbound message waiting for its conversation's debounce window"""

    __tablename__ = "pending_messages"
    __table_args__ = (
        Index("ix_pending_messages_mature", "scheduled_process_at", "processing_started_at"),
    )

    id = Column(Integer, primary_key=True, index=True)

    session_key_hash = Column(String(64), nullable=False, index=True)
    session_key = Column(JSON, nullable=False)  # channel_type, channel_id, channel_user_id
    message = Column(JSON, nullable=False)  # normalized inbound message

    received_at = Column(DateTime, default=utcnow, nullable=False)
    scheduled_process_at = Column(DateTime, nullable=False)

    # Claim lock
    processing_started_at = Column(DateTime, nullable=True)

    # Retry / dead-letter tracking
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(String(1000), nullable=True)
