"""
Database Models
"""
from app.db.models.contact import Contact
from app.db.models.conversation_session import ConversationSession, SessionStatus
from app.db.models.message import Message, MessageDirection, MessageType
from app.db.models.pending_message import PendingMessage
from app.db.models.followup_queue_item import FollowupQueueItem, FollowupStatus
from app.db.models.followup_config import FollowupConfig, FollowupConfigType
from app.db.models.state_machine_definition import StateMachineDefinition
from app.db.models.knowledge_entry import KnowledgeEntry
from app.db.models.conversation_example import ConversationExample, ExampleCategory
from app.db.models.escalation import Escalation, EscalationStatus
from app.db.models.llm_usage_log import LLMUsageLog

__all__ = [
    "Contact",
    "ConversationSession",
    "SessionStatus",
    "Message",
    "MessageDirection",
    "MessageType",
    "PendingMessage",
    "FollowupQueueItem",
    "FollowupStatus",
    "FollowupConfig",
    "FollowupConfigType",
    "StateMachineDefinition",
    "KnowledgeEntry",
    "ConversationExample",
    "ExampleCategory",
    "Escalation",
    "EscalationStatus",
    "LLMUsageLog",
]
