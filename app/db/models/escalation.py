"""
Escalation Model - hand-offs to human agents
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float, Text, Enum as SQLEnum

from app.db.database import Base, utcnow


class EscalationStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Escalation(Base):
    __tablename__ = "escalations"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)

    reason = Column(String(50), nullable=False)
    priority = Column(String(20), nullable=False, default="immediate")
    confidence = Column(Float, nullable=False, default=1.0)
    summary = Column(Text, nullable=True)

    status = Column(SQLEnum(EscalationStatus), default=EscalationStatus.OPEN, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)
