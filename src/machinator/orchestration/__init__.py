"""Orchestrator state."""

from .state import (
    Agent,
    AgentNotFoundError,
    AgentPoolState,
    AgentState,
    InvalidTransitionError,
    StateError,
    StatePersistenceError,
    TaskAlreadyAssignedError,
    TaskBarredError,
)

__all__ = [
    "Agent",
    "AgentNotFoundError",
    "AgentPoolState",
    "AgentState",
    "InvalidTransitionError",
    "StateError",
    "StatePersistenceError",
    "TaskAlreadyAssignedError",
    "TaskBarredError",
]
