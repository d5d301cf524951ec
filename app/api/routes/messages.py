"""
Inbound Messages - entry point for already-normalized channel messages

Channel adapters (webhook receivers) translate their envelopes into a
SessionKey + NormalizedMessage and post them here. The message is only
buffered; a worker picks the group up once its debounce window closes.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.schemas import NormalizedMessage, SessionKey
from app.domain.services.message_buffer_service import MessageBufferService

logger = get_logger(__name__)

router = APIRouter()


class InboundMessageRequest(BaseModel):
    session_key: SessionKey
    message: NormalizedMessage
    debounce_ms: int | None = Field(
        default=None, ge=0, le=60_000,
        description="Override of DEBOUNCE_MS for this message",
    )


class InboundMessageResponse(BaseModel):
    status: str = "buffered"
    pending_message_id: int
    session_key_hash: str
    scheduled_process_at: datetime


@router.post(
    "/inbound",
    response_model=InboundMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Buffer an inbound message",
    description=(
        "Adds the message to the debounce buffer of its conversation. "
        "Every new message pushes the conversation's processing time back."
    ),
    responses={
        202: {"description": "Message buffered"},
        422: {"description": "Invalid session key or message"},
    },
)
async def receive_inbound_message(
    body: InboundMessageRequest,
    db: AsyncSession = Depends(get_db),
) -> InboundMessageResponse:
    row = await MessageBufferService(db).add(
        body.session_key, body.message, debounce_ms=body.debounce_ms
    )

    logger.info(
        "Inbound message accepted",
        extra_data={
            "channel_type": body.session_key.channel_type,
            "message_type": body.message.type,
            "pending_message_id": row.id,
        }
    )

    return InboundMessageResponse(
        pending_message_id=row.id,
        session_key_hash=row.session_key_hash,
        scheduled_process_at=row.scheduled_process_at,
    )
