"""
Conversation Example Model - labeled few-shot transcripts
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Boolean, Enum as SQLEnum

from app.db.database import Base, utcnow


class ExampleCategory(str, enum.Enum):
    HAPPY_PATH = "happy_path"
    DEVIATION = "deviation"
    EDGE_CASE = "edge_case"
    COMPLEX = "complex"


class ConversationExample(Base):
    __tablename__ = "conversation_examples"

    id = Column(Integer, primary_key=True, index=True)
    example_id = Column(String(100), nullable=False, unique=True)
    scenario = Column(Text, nullable=False)
    category = Column(SQLEnum(ExampleCategory), nullable=False, index=True)
    outcome = Column(String(100), nullable=False)
    primary_state = Column(String(100), nullable=True, index=True)
    state_flow = Column(JSON, default=list)

    # [{"role": "customer" | "agent", "content": str, "state": str | None}]
    messages = Column(JSON, default=list)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
