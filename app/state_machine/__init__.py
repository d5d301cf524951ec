"""
State Machine Module for Conversation Flows
"""
from app.state_machine.states import (
    ConversationState,
    StateConfig,
    StateMachineConfig,
    FollowupStep,
    DEFAULT_STATE_MACHINE,
)
from app.state_machine.machine import StateMachine, StateTransition
from app.state_machine.manager import StateMachineManager

__all__ = [
    "ConversationState",
    "StateConfig",
    "StateMachineConfig",
    "FollowupStep",
    "DEFAULT_STATE_MACHINE",
    "StateMachine",
    "StateTransition",
    "StateMachineManager",
]
