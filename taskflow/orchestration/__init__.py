"""Orchestration layer - task state machine and group submission propagation."""

from taskflow.orchestration.state_machine import TaskStateMachine
from taskflow.orchestration.group_coordinator import GroupSubmissionCoordinator
from taskflow.orchestration.triggers import (
    Trigger,
    TransitionOutcome,
    TransitionResult,
    PropagationContext,
    parse_trigger,
)

__all__ = [
    "TaskStateMachine",
    "GroupSubmissionCoordinator",
    "Trigger",
    "TransitionOutcome",
    "TransitionResult",
    "PropagationContext",
    "parse_trigger",
]
