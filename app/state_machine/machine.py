"""
State Machine - legal transition graph for one conversation
"""
from dataclasses import dataclass, field
from datetime import datetime

from app.core.exceptions import ConfigurationError, InvalidTransitionError
from app.db.database import utcnow
from app.state_machine.states import ConversationState, StateConfig, StateMachineConfig


@dataclass
class StateTransition:
    from_state: str
    to_state: str
    reason: str
    timestamp: datetime = field(default_factory=utcnow)


class StateMachine:
    """
    Wraps a loaded definition and the session's current state.

    State names are free strings in storage; they are only valid if the
    definition knows them, which is checked on every lookup.
    """

    def __init__(self, definition: StateMachineConfig, current_state: str | None = None):
        self.definition = definition
        self.current_state = current_state or definition.initial_state
        self.transitions: list[StateTransition] = []

    @classmethod
    def from_session(cls, session, definition: StateMachineConfig) -> "StateMachine":
        return cls(definition, session.current_state)

    def _lookup(self, state: str) -> StateConfig:
        config = self.definition.states.get(state)
        if config is None:
            raise ConfigurationError(state, self.definition.name)
        return config

    def get_config(self) -> StateConfig:
        """Config of the current state.

        Raises:
            ConfigurationError: the session points at a state this definition
                does not have (e.g. a retired state)
        """
        return self._lookup(self.current_state)

    def can_transition_to(self, target: str) -> bool:
        return target in self.get_config().allowed_transitions

    def transition_to(self, target: str, reason: str = "") -> StateTransition:
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.current_state, target)

        transition = StateTransition(
            from_state=self.current_state,
            to_state=target,
            reason=reason,
        )
        self.transitions.append(transition)
        self.current_state = target
        return transition

    def build_transition_context(self) -> str:
        """Prompt section telling the model which moves are legal and when"""
        config = self.get_config()

        options = []
        for target in config.allowed_transitions:
            # Escalation is decided by the escalation checks, not offered here
            if target == ConversationState.ESCALATED.value:
                continue
            guidance = config.transition_guidance.get(target, "")
            target_config = self.definition.states.get(target)
            next_objective = target_config.objective if target_config else ""
            options.append(f"- **{target}**: {guidance}\n  Next objective: {next_objective}")

        signals = "\n".join(f"- {s}" for s in config.completion_signals) or "- (none defined)"

        lines = [
            f"## Current State: {self.current_state}",
            f"**Objective**: {config.objective}",
            f"**Description**: {config.description}",
            "",
            "## Completion Signals",
            "Look for these signals that indicate the current objective is complete:",
            signals,
            "",
            "## Available Transitions",
            "When you detect completion signals, recommend transitioning to one of these states:",
            "\n".join(options) or "- (stay in the current state)",
        ]
        if config.max_messages:
            lines.append("")
            lines.append(f"Note: This state typically completes within {config.max_messages} exchanges.")
        return "\n".join(lines)
