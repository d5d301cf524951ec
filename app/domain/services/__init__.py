"""
Domain Services
"""
from app.domain.services.message_buffer_service import MessageBufferService
from app.domain.services.followup_service import FollowupService
from app.domain.services.conversation_engine import ConversationEngine, EngineDependencies
from app.domain.services.media_service import MediaService
from app.domain.services.notification_service import EscalationNotifier
from app.domain.services.whatsapp_sender import WhatsAppCloudSender

__all__ = [
    "MessageBufferService",
    "FollowupService",
    "ConversationEngine",
    "EngineDependencies",
    "MediaService",
    "EscalationNotifier",
    "WhatsAppCloudSender",
]
