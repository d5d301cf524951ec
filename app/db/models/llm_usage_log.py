"""
LLM Usage Log Model - one row per model / embedding / media call
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text

from app.db.database import Base, utcnow


class LLMUsageLog(Base):
    __tablename__ = "llm_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, nullable=True, index=True)

    request_type = Column(String(20), nullable=False)  # chat, embedding, vision, transcription
    provider = Column(String(50), nullable=False)
    model = Column(String(100), nullable=False)

    prompt_tokens = Column(Integer, default=0, nullable=False)
    completion_tokens = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    cost_usd = Column(Float, default=0.0, nullable=False)

    input_preview = Column(Text, nullable=True)
    output_preview = Column(Text, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    finish_reason = Column(String(30), nullable=True)

    is_error = Column(Boolean, default=False, nullable=False)
    error_message = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
