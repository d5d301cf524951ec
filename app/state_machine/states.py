"""
State Definitions for the sales conversation flow

Definitions are data: the active one is loaded from the database and this
module only provides the shapes plus the built-in default flow.
"""
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class ConversationState(str, Enum):
    """States of the built-in default flow"""

    # Entry
    INITIAL = "initial"
    RETURNING_CUSTOMER = "returning_customer"

    # Qualification
    QUALIFYING = "qualifying"
    DIAGNOSING = "diagnosing"

    # Sales
    PITCHING = "pitching"
    HANDLING_OBJECTION = "handling_objection"
    CLOSING = "closing"
    POST_REGISTRATION = "post_registration"

    # Support
    TECHNICAL_SUPPORT = "technical_support"
    DEPOSIT_SUPPORT = "deposit_support"

    # Terminal
    FOLLOW_UP = "follow_up"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    DISQUALIFIED = "disqualified"


# States from which a sent follow-up moves the session back into follow_up
TERMINAL_STATES = {
    ConversationState.COMPLETED.value,
    ConversationState.DISQUALIFIED.value,
    ConversationState.FOLLOW_UP.value,
}


class FollowupStep(BaseModel):
    """One entry of a state's follow-up sequence"""
    interval: str  # "15m", "2h", "1d", "1w"
    config_name: str | None = None


class StateConfig(BaseModel):
    """One node of a state machine definition"""

    state: str
    objective: str
    description: str = ""
    completion_signals: list[str] = Field(default_factory=list)
    rag_categories: list[str] = Field(default_factory=list)
    allowed_transitions: list[str] = Field(default_factory=list)
    transition_guidance: dict[str, str] = Field(default_factory=dict)
    max_messages: int | None = None
    followup_sequence: list[FollowupStep] = Field(default_factory=list)


class StateMachineConfig(BaseModel):
    """A full definition: ``{initial_state, states}``"""

    name: str = "default"
    version: int = 1
    initial_state: str = ConversationState.INITIAL.value
    states: dict[str, StateConfig]

    @model_validator(mode="after")
    def validate_graph(self) -> "StateMachineConfig":
        """Reject definitions whose transitions point at unknown states"""
        if self.initial_state not in self.states:
            raise ValueError(f"initial_state '{self.initial_state}' is not defined")
        for name, config in self.states.items():
            unknown = [t for t in config.allowed_transitions if t not in self.states]
            if unknown:
                raise ValueError(
                    f"state '{name}' allows transitions to undefined states: {', '.join(unknown)}"
                )
        return self


_NUDGE_SEQUENCE = [
    FollowupStep(interval="15m", config_name="nudge_short"),
    FollowupStep(interval="1d", config_name="nudge_daily"),
    FollowupStep(interval="3d", config_name="nudge_last"),
]


def _state(state: ConversationState, **kwargs) -> StateConfig:
    return StateConfig(state=state.value, **kwargs)


DEFAULT_STATE_MACHINE = StateMachineConfig(
    name="default",
    version=1,
    initial_state=ConversationState.INITIAL.value,
    states={
        c.state: c for c in [
            _state(
                ConversationState.INITIAL,
                objective="Greet the user and learn what brought them here",
                description="First contact. Be warm, introduce the business briefly and ask an open question.",
                completion_signals=[
                    "User states what they are looking for",
                    "User asks about a specific product",
                ],
                rag_categories=["general"],
                allowed_transitions=["qualifying", "pitching", "technical_support", "escalated"],
                transition_guidance={
                    "qualifying": "The user showed interest but we know nothing about their experience yet",
                    "pitching": "The user already asked for the offer details",
                    "technical_support": "The user is an existing customer with a platform problem",
                },
                max_messages=3,
                followup_sequence=_NUDGE_SEQUENCE,
            ),
            _state(
                ConversationState.RETURNING_CUSTOMER,
                objective="Recognize the returning user and resume where they left off",
                allowed_transitions=["qualifying", "pitching", "closing", "escalated"],
                transition_guidance={
                    "pitching": "They want to hear the offer again",
                    "closing": "They are ready to register",
                },
            ),
            _state(
                ConversationState.QUALIFYING,
                objective="Understand the user's experience, goals and budget",
                description="Ask one question at a time. Capture experience level and interest.",
                completion_signals=[
                    "Experience level is known",
                    "Main interest is known",
                ],
                rag_categories=["accounts", "general"],
                allowed_transitions=["diagnosing", "pitching", "disqualified", "escalated"],
                transition_guidance={
                    "diagnosing": "The user's needs are unclear after a couple of questions",
                    "pitching": "Experience and interest are known",
                    "disqualified": "The user is clearly not a fit (underage, restricted country)",
                },
                max_messages=5,
                followup_sequence=_NUDGE_SEQUENCE,
            ),
            _state(
                ConversationState.DIAGNOSING,
                objective="Find out which product fits the user best",
                rag_categories=["accounts"],
                allowed_transitions=["pitching", "disqualified", "escalated"],
                transition_guidance={
                    "pitching": "A matching product was identified",
                },
            ),
            _state(
                ConversationState.PITCHING,
                objective="Present the recommended product and its key rules",
                description="Explain the value proposition clearly and invite questions.",
                completion_signals=[
                    "User asks how to register",
                    "User raises an objection",
                ],
                rag_categories=["accounts", "pricing"],
                allowed_transitions=["handling_objection", "closing", "escalated"],
                transition_guidance={
                    "handling_objection": "The user expressed doubt, fear or a concern",
                    "closing": "The user wants to sign up",
                },
                max_messages=6,
                followup_sequence=_NUDGE_SEQUENCE,
            ),
            _state(
                ConversationState.HANDLING_OBJECTION,
                objective="Address the user's concern honestly using the knowledge base",
                rag_categories=["faq", "security"],
                allowed_transitions=["pitching", "closing", "disqualified", "escalated"],
                transition_guidance={
                    "pitching": "Concern resolved and the user wants more detail",
                    "closing": "Concern resolved and the user is ready",
                    "disqualified": "The user firmly declines",
                },
                followup_sequence=_NUDGE_SEQUENCE,
            ),
            _state(
                ConversationState.CLOSING,
                objective="Guide the user through registration and first deposit",
                completion_signals=[
                    "User confirms registration",
                    "User confirms deposit",
                ],
                rag_categories=["registration", "deposits"],
                allowed_transitions=["post_registration", "deposit_support", "handling_objection", "escalated"],
                transition_guidance={
                    "post_registration": "The user confirmed they registered",
                    "deposit_support": "The user has trouble depositing",
                    "handling_objection": "A new concern appeared before signing up",
                },
                followup_sequence=_NUDGE_SEQUENCE,
            ),
            _state(
                ConversationState.POST_REGISTRATION,
                objective="Confirm the account is ready and explain next steps",
                rag_categories=["platform"],
                allowed_transitions=["completed", "deposit_support", "technical_support", "escalated"],
                transition_guidance={
                    "completed": "The user is set up and has no more questions",
                    "deposit_support": "The user still needs to fund the account",
                    "technical_support": "The user cannot access the platform",
                },
            ),
            _state(
                ConversationState.TECHNICAL_SUPPORT,
                objective="Solve the user's platform problem or hand off",
                rag_categories=["platform"],
                allowed_transitions=["completed", "escalated"],
                transition_guidance={"completed": "The problem is solved"},
            ),
            _state(
                ConversationState.DEPOSIT_SUPPORT,
                objective="Help the user complete a deposit",
                rag_categories=["deposits"],
                allowed_transitions=["post_registration", "completed", "escalated"],
                transition_guidance={
                    "post_registration": "The deposit went through",
                    "completed": "The user is done for now",
                },
            ),
            _state(
                ConversationState.FOLLOW_UP,
                objective="Re-engage a user who went quiet",
                allowed_transitions=["qualifying", "pitching", "closing", "escalated"],
                transition_guidance={
                    "qualifying": "The user is back but we still need to learn about them",
                    "pitching": "The user wants the offer again",
                    "closing": "The user is ready to register",
                },
            ),
            _state(
                ConversationState.ESCALATED,
                objective="A human agent owns the conversation",
                allowed_transitions=["follow_up", "completed"],
            ),
            _state(
                ConversationState.COMPLETED,
                objective="Conversation goal reached; answer any last questions",
                allowed_transitions=["follow_up", "technical_support", "escalated"],
                followup_sequence=[FollowupStep(interval="1w", config_name="check_in_weekly")],
            ),
            _state(
                ConversationState.DISQUALIFIED,
                objective="Politely close the conversation",
                allowed_transitions=["follow_up"],
            ),
        ]
    },
)
