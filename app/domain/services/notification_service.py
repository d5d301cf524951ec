"""
Notification Service - alerts human agents about escalations

Best effort: the customer's hand-off reply must never depend on the alert
going out, so callers schedule ``send_escalation_alert`` in the background
and failures only reach the log.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.domain.services.whatsapp_sender import WhatsAppCloudSender, mask_phone

logger = get_logger(__name__)

ALERT_SUMMARY_CHARS = 100


@dataclass
class EscalationAlert:
    reason: str
    user_name: str
    user_phone: str
    summary: str
    session_id: int | None = None


class EscalationNotifier:

    def __init__(
        self,
        sender: WhatsAppCloudSender | None = None,
        *,
        template_name: str | None = None,
        throttle_seconds: int | None = None,
    ):
        self._sender = sender or WhatsAppCloudSender()
        self._template_name = template_name or settings.WHATSAPP_TPL_ESCALATION
        self._throttle_seconds = throttle_seconds or settings.ESCALATION_ALERT_THROTTLE_SECONDS

    async def send_escalation_alert(self, destination: str, alert: EscalationAlert) -> bool:
        """
        Send the agent template. One alert per session per throttle window,
        so a customer repeating "agente" does not flood the agent's phone.

        Raises:
            WhatsAppError: the template send failed
        """
        if alert.session_id is not None:
            redis = await get_redis()
            throttle_key = f"escalation_alert:{alert.session_id}"
            if not await redis.set(throttle_key, "1", nx=True, ex=self._throttle_seconds):
                logger.info(
                    "Escalation alert throttled",
                    extra_data={"session_id": alert.session_id, "reason": alert.reason}
                )
                return False

        await self._sender.send_template(
            destination,
            self._template_name,
            [alert.user_name, alert.user_phone, alert.reason, alert.summary[:ALERT_SUMMARY_CHARS]],
        )
        logger.info(
            "Escalation alert sent",
            extra_data={
                "session_id": alert.session_id,
                "reason": alert.reason,
                "destination": mask_phone(destination),
            }
        )
        return True
