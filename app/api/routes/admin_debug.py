"""
Admin Debug Endpoints - diagnostics without direct database access

1. Circuit breaker status (LLM, embedding, media, WhatsApp)
2. Debounce buffer and follow-up queue summaries
3. Session state lookup (debugging stuck conversations)
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.circuit_breaker import (
    CircuitBreaker,
    get_embedding_circuit_breaker,
    get_llm_circuit_breaker,
    get_media_circuit_breaker,
    get_whatsapp_circuit_breaker,
)
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.conversation_session import ConversationSession
from app.domain.services.followup_service import FollowupService
from app.domain.services.message_buffer_service import MessageBufferService

logger = get_logger(__name__)

router = APIRouter()


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float = Field(
        description="Seconds until a retry is allowed (0 when not open)"
    )


class BufferSummaryResponse(BaseModel):
    total: int = 0
    waiting: int = 0
    mature: int = 0
    processing: int = 0
    dead_lettered: int = 0


class FollowupSummaryResponse(BaseModel):
    pending: int = 0
    processing: int = 0
    sent: int = 0
    cancelled: int = 0
    failed: int = 0
    due: int = 0
    total: int = 0


class SessionStateResponse(BaseModel):
    session_id: int
    contact_id: int
    channel_type: str
    channel_id: str
    channel_user_id: str
    current_state: str
    previous_state: str | None
    status: str
    is_escalated: bool
    escalation_reason: str | None
    followup_index: int
    context: dict
    last_message_at: datetime | None
    updated_at: datetime | None


# ─── 1. Circuit Breakers ────────────────────────────────────────────────────

def _known_breakers() -> list[CircuitBreaker]:
    """Create the configured breakers so they show up before first use"""
    breakers = [
        get_llm_circuit_breaker(settings.LLM_PROVIDER),
        get_embedding_circuit_breaker(settings.EMBEDDING_PROVIDER),
        get_media_circuit_breaker(),
        get_whatsapp_circuit_breaker(),
    ]
    if settings.LLM_FALLBACK_PROVIDER:
        breakers.append(get_llm_circuit_breaker(settings.LLM_FALLBACK_PROVIDER))

    seen = {cb.service_name for cb in breakers}
    breakers.extend(cb for cb in CircuitBreaker.all_instances() if cb.service_name not in seen)
    return breakers


@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Circuit breaker status",
    responses={
        200: {"description": "Status of every registered circuit breaker"},
        401: {"description": "Missing API key"},
        403: {"description": "Invalid API key"},
    },
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> list[CircuitBreakerStatusResponse]:
    return [CircuitBreakerStatusResponse(**cb.snapshot()) for cb in _known_breakers()]


# ─── 2. Buffer + follow-up queue ────────────────────────────────────────────

@router.get(
    "/buffer/summary",
    response_model=BufferSummaryResponse,
    summary="Debounce buffer summary",
    description="Row counts of pending_messages: waiting, mature, claimed and dead-lettered.",
    responses={
        401: {"description": "Missing API key"},
        403: {"description": "Invalid API key"},
    },
)
async def get_buffer_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> BufferSummaryResponse:
    return BufferSummaryResponse(**await MessageBufferService(db).get_summary())


@router.get(
    "/followups/summary",
    response_model=FollowupSummaryResponse,
    summary="Follow-up queue summary",
    responses={
        401: {"description": "Missing API key"},
        403: {"description": "Invalid API key"},
    },
)
async def get_followup_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> FollowupSummaryResponse:
    return FollowupSummaryResponse(**await FollowupService(db).get_summary())


# ─── 3. Session state ───────────────────────────────────────────────────────

def _session_to_response(session: ConversationSession) -> SessionStateResponse:
    return SessionStateResponse(
        session_id=session.id,
        contact_id=session.contact_id,
        channel_type=session.channel_type,
        channel_id=session.channel_id,
        channel_user_id=session.channel_user_id,
        current_state=session.current_state,
        previous_state=session.previous_state,
        status=session.status.value if hasattr(session.status, "value") else str(session.status),
        is_escalated=session.is_escalated,
        escalation_reason=session.escalation_reason,
        followup_index=session.followup_index,
        context=session.context or {},
        last_message_at=session.last_message_at,
        updated_at=session.updated_at,
    )


@router.get(
    "/sessions/{session_id}",
    response_model=SessionStateResponse,
    summary="Session state by id",
    responses={
        401: {"description": "Missing API key"},
        403: {"description": "Invalid API key"},
        404: {"description": "Session not found"},
    },
)
async def get_session_state(
    session_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> SessionStateResponse:
    session = await db.get(ConversationSession, session_id)
    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return _session_to_response(session)


@router.get(
    "/sessions",
    response_model=list[SessionStateResponse],
    summary="Session state by channel user",
    description="Look up the sessions of a channel user id (e.g. a WhatsApp wa_id).",
    responses={
        401: {"description": "Missing API key"},
        403: {"description": "Invalid API key"},
    },
)
async def find_sessions(
    channel_user_id: str = Query(..., min_length=1),
    channel_type: Optional[str] = Query(default=None),
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> list[SessionStateResponse]:
    query = select(ConversationSession).where(
        ConversationSession.channel_user_id == channel_user_id
    )
    if channel_type:
        query = query.where(ConversationSession.channel_type == channel_type)
    result = await db.execute(query.order_by(ConversationSession.id))
    return [_session_to_response(s) for s in result.scalars().all()]
