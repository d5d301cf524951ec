"""
Follow-up Config Model - reusable follow-up message bodies
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Boolean, Enum as SQLEnum

from app.db.database import Base, utcnow


class FollowupConfigType(str, enum.Enum):
    TEXT = "text"  # free text with {{key}} placeholders
    TEMPLATE = "template"  # approved WhatsApp template, content holds its name


class FollowupConfig(Base):
    __tablename__ = "followup_configs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True)
    config_type = Column(SQLEnum(FollowupConfigType), default=FollowupConfigType.TEXT, nullable=False)
    content = Column(Text, nullable=False)

    # [{"key": "name", "type": "path", "field": "contact.full_name"}, ...]
    variables_config = Column(JSON, default=list)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
