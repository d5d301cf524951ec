"""
Domain value objects passed between the buffer, the engine and the workers
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field


class SessionKey(BaseModel):
    """Channel identity of one conversation"""
    channel_type: str = "whatsapp"
    channel_id: str  # WhatsApp phone_number_id, Instagram page id, ...
    channel_user_id: str  # wa_id / psid


class ImageAnalysis(BaseModel):
    description: str
    extracted_text: str | None = None
    is_receipt: bool | None = None
    confidence: float | None = None


class NormalizedMessage(BaseModel):
    """Channel-agnostic inbound message"""
    id: str
    timestamp: datetime
    type: Literal["text", "image", "audio", "template", "interactive"] = "text"
    content: str | None = None
    media_url: str | None = None
    transcription: str | None = None
    image_analysis: ImageAnalysis | None = None

    @property
    def text(self) -> str:
        return self.content or self.transcription or ""


class Transition(BaseModel):
    to: str
    reason: str = ""
    confidence: float = 0.0


class ModelEscalation(BaseModel):
    should_escalate: bool = Field(
        default=False, validation_alias=AliasChoices("should_escalate", "shouldEscalate")
    )
    reason: str = "ai_uncertainty"
    confidence: float = 0.0
    summary: str | None = None


class StructuredReply(BaseModel):
    """What the model is asked to return; every field but the text is optional"""
    responses: list[str]
    transition: Transition | None = None
    escalation: ModelEscalation | None = None
    extracted_data: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("extracted_data", "extractedData")
    )
    is_uncertain: bool = Field(
        default=False, validation_alias=AliasChoices("is_uncertain", "isUncertain")
    )


class EscalationResult(BaseModel):
    should_escalate: bool
    reason: str
    priority: Literal["immediate", "high", "medium"] = "medium"
    confidence: float = 0.0
    summary: str | None = None


class BotResponse(BaseModel):
    type: Literal["text", "image", "template", "interactive"] = "text"
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class EngineOutput(BaseModel):
    session_id: int | None = None
    session_key: SessionKey | None = None
    responses: list[BotResponse] = Field(default_factory=list)
    session_updates: dict[str, Any] = Field(default_factory=dict)
    escalation: EscalationResult | None = None
