"""
Message Model - conversation history (both directions)
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text, Enum as SQLEnum

from app.db.database import Base, utcnow


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    TEMPLATE = "template"
    INTERACTIVE = "interactive"


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)

    direction = Column(SQLEnum(MessageDirection), nullable=False)
    message_type = Column(SQLEnum(MessageType), default=MessageType.TEXT, nullable=False)
    content = Column(Text, nullable=True)

    # Media
    media_url = Column(String(1000), nullable=True)
    transcription = Column(Text, nullable=True)
    image_analysis = Column(JSON, nullable=True)

    platform_message_id = Column(String(200), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
