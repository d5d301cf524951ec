"""
Knowledge Entry Model - RAG source
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Boolean

from app.db.database import Base, utcnow


class KnowledgeEntry(Base):
    __tablename__ = "knowledge_entries"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(300), nullable=False)
    answer = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    category = Column(String(100), nullable=False, index=True)
    semantic_tags = Column(JSON, default=list)

    # Stored as a plain list of floats
    embedding = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
