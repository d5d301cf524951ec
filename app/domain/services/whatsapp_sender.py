"""
WhatsApp Cloud API sender - text and template messages

Used for bot replies, follow-ups and agent alerts. Text goes through the
pywa client, templates through a plain Graph API call. Every send is retried
with exponential backoff inside the WhatsApp circuit breaker; exhausted
attempts raise WhatsAppError.
"""
from __future__ import annotations

import asyncio
from typing import Optional, Sequence

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_whatsapp_circuit_breaker
from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.core.logging import get_logger

logger = get_logger(__name__)


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    digits = phone.strip()
    if len(digits) <= 4:
        return "****"
    return f"{digits[:3]}****{digits[-2:]}"


def normalize_recipient(phone: str) -> str:
    """Cloud API wants 5215512345678, not +52 155 1234 5678"""
    return "".join(ch for ch in phone if ch.isdigit()) or phone


class WhatsAppCloudSender:

    def __init__(
        self,
        *,
        phone_number_id: str | None = None,
        access_token: str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        max_retries: int | None = None,
    ):
        self._phone_number_id = phone_number_id or settings.WHATSAPP_PHONE_NUMBER_ID
        self._access_token = access_token or settings.WHATSAPP_ACCESS_TOKEN
        self._base_url = (base_url or settings.WHATSAPP_API_BASE_URL).rstrip("/")
        self._api_version = api_version or settings.WHATSAPP_API_VERSION
        self._circuit_breaker = circuit_breaker or get_whatsapp_circuit_breaker()
        self._max_retries = max_retries or settings.WHATSAPP_MAX_RETRIES

        # One pywa client per sending number, created lazily
        self._clients: dict[str, object] = {}

    def _get_client(self, phone_number_id: str):
        client = self._clients.get(phone_number_id)
        if client is None:
            from pywa_async import WhatsApp as PyWaClient

            client = PyWaClient(phone_id=phone_number_id, token=self._access_token)
            self._clients[phone_number_id] = client
        return client

    def messages_url(self, phone_number_id: str | None = None) -> str:
        return f"{self._base_url}/{self._api_version}/{phone_number_id or self._phone_number_id}/messages"

    async def _execute_with_retry(self, operation: str, phone_masked: str, func):
        """Run ``func`` up to max_retries times with 1s, 2s, 4s ... between tries"""
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                return await func()
            except Exception as exc:
                last_error = exc
                if attempt < self._max_retries - 1:
                    backoff = 2 ** attempt
                    logger.warning(
                        f"{operation} failed, retrying",
                        extra_data={
                            "to": phone_masked,
                            "error": str(exc),
                            "attempt": attempt + 1,
                            "max_retries": self._max_retries,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)

        if isinstance(last_error, WhatsAppError):
            raise last_error
        raise WhatsAppError(
            message=f"Cloud API {operation} failed after {self._max_retries} attempts",
            details={
                "to": phone_masked,
                "error": str(last_error),
                "attempts": self._max_retries,
            },
        )

    async def send_text(
        self,
        to: str,
        text: str,
        *,
        phone_number_id: str | None = None,
    ) -> Optional[str]:
        """Send a text message; returns the platform message id when given"""
        to = normalize_recipient(to)
        phone_masked = mask_phone(to)
        client = self._get_client(phone_number_id or self._phone_number_id)

        async def _send_single():
            return await client.send_message(to=to, text=text)

        async def _send_with_retry():
            return await self._execute_with_retry("send_text", phone_masked, _send_single)

        sent = await self._circuit_breaker.execute(_send_with_retry)
        logger.info("WhatsApp text sent", extra_data={"to": phone_masked})
        # pywa returns a SentMessage; older releases return the bare id
        return getattr(sent, "id", sent)

    async def send_template(
        self,
        to: str,
        template_name: str,
        parameters: Sequence[str] = (),
        *,
        language_code: str = "es",
        phone_number_id: str | None = None,
    ) -> Optional[str]:
        """Send an approved template; ``parameters`` fill {{1}}, {{2}}, ... in order"""
        to = normalize_recipient(to)
        template: dict = {
            "name": template_name,
            "language": {"code": language_code},
        }
        if parameters:
            template["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": str(p)} for p in parameters],
            }]
        body = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "template",
            "template": template,
        }

        async def _send_with_retry():
            return await self._execute_with_retry(
                "send_template",
                mask_phone(to),
                lambda: self._post(body, "send_template", phone_number_id),
            )

        return await self._circuit_breaker.execute(_send_with_retry)

    async def _post(
        self,
        body: dict,
        operation: str,
        phone_number_id: str | None,
    ) -> Optional[str]:
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    self.messages_url(phone_number_id),
                    json=body,
                    headers={"Authorization": f"Bearer {self._access_token}"},
                )
        except httpx.TimeoutException:
            raise WhatsAppError(f"{operation} timeout", details={"timeout": True})
        except httpx.RequestError as e:
            raise WhatsAppError(f"{operation} network error: {e}", details={"network_error": True})

        if response.status_code >= 400:
            raise WhatsAppError.from_response(operation, response)

        logger.info(
            "WhatsApp message sent",
            extra_data={"operation": operation, "to": mask_phone(body.get("to"))}
        )
        messages = response.json().get("messages") or []
        return messages[0].get("id") if messages else None
