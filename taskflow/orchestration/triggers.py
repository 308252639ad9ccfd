"""
Status triggers and transition results.

Trigger strings arrive from clients in several spellings ("rtm", "fix",
"fixinc", ...). They are resolved here into a closed Trigger set before
the state machine sees them.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from taskflow.errors import UnknownTriggerError
from taskflow.kernel.models.task import TaskStatus
from taskflow.kernel.permissions.task_roles import TaskRole


class Trigger(str, Enum):
    """Canonical status triggers."""

    READY_TO_MARK = "ready_to_mark"
    NOT_STARTED = "not_started"
    NEED_HELP = "need_help"
    WORKING_ON_IT = "working_on_it"
    FAIL = "fail"
    REDO = "redo"
    COMPLETE = "complete"
    FIX_AND_RESUBMIT = "fix_and_resubmit"
    DO_NOT_RESUBMIT = "do_not_resubmit"
    DEMONSTRATE = "demonstrate"
    DISCUSS = "discuss"


TRIGGER_ALIASES: Dict[str, Trigger] = {
    "ready_to_mark": Trigger.READY_TO_MARK,
    "rtm": Trigger.READY_TO_MARK,
    "not_started": Trigger.NOT_STARTED,
    "not_ready_to_mark": Trigger.NOT_STARTED,
    "need_help": Trigger.NEED_HELP,
    "working_on_it": Trigger.WORKING_ON_IT,
    "fail": Trigger.FAIL,
    "f": Trigger.FAIL,
    "redo": Trigger.REDO,
    "complete": Trigger.COMPLETE,
    "fix_and_resubmit": Trigger.FIX_AND_RESUBMIT,
    "fix": Trigger.FIX_AND_RESUBMIT,
    "do_not_resubmit": Trigger.DO_NOT_RESUBMIT,
    "dnr": Trigger.DO_NOT_RESUBMIT,
    "fix_and_include": Trigger.DO_NOT_RESUBMIT,
    "fixinc": Trigger.DO_NOT_RESUBMIT,
    "demonstrate": Trigger.DEMONSTRATE,
    "de": Trigger.DEMONSTRATE,
    "demo": Trigger.DEMONSTRATE,
    "discuss": Trigger.DISCUSS,
    "d": Trigger.DISCUSS,
}

# Available to students and staff alike
SELF_SERVICE_TRIGGERS: Dict[Trigger, TaskStatus] = {
    Trigger.READY_TO_MARK: TaskStatus.READY_TO_MARK,
    Trigger.NOT_STARTED: TaskStatus.NOT_STARTED,
    Trigger.NEED_HELP: TaskStatus.NEED_HELP,
    Trigger.WORKING_ON_IT: TaskStatus.WORKING_ON_IT,
}

# Staff only; each maps onto an assessment
ASSESSMENT_TRIGGERS: Dict[Trigger, TaskStatus] = {
    Trigger.FAIL: TaskStatus.FAIL,
    Trigger.REDO: TaskStatus.REDO,
    Trigger.COMPLETE: TaskStatus.COMPLETE,
    Trigger.FIX_AND_RESUBMIT: TaskStatus.FIX_AND_RESUBMIT,
    Trigger.DO_NOT_RESUBMIT: TaskStatus.DO_NOT_RESUBMIT,
    Trigger.DEMONSTRATE: TaskStatus.DEMONSTRATE,
    Trigger.DISCUSS: TaskStatus.DISCUSS,
}

# Quality points are recorded before these assessments
QUALITY_TRIGGERS: FrozenSet[Trigger] = frozenset({
    Trigger.COMPLETE,
    Trigger.DISCUSS,
    Trigger.DEMONSTRATE,
})

# Resulting statuses that stay local to one member of a group
NON_PROPAGATING_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.WORKING_ON_IT,
    TaskStatus.NEED_HELP,
})


def parse_trigger(value: Union[str, Trigger]) -> Trigger:
    """Resolve a trigger string or alias. Unknown values are rejected."""
    if isinstance(value, Trigger):
        return value
    key = (value or "").strip().lower()
    try:
        return TRIGGER_ALIASES[key]
    except KeyError:
        raise UnknownTriggerError(value) from None


def target_status(trigger: Trigger) -> TaskStatus:
    if trigger in SELF_SERVICE_TRIGGERS:
        return SELF_SERVICE_TRIGGERS[trigger]
    return ASSESSMENT_TRIGGERS[trigger]


@dataclass(frozen=True)
class PropagationContext:
    """
    Marks a transition as a replica of another member's transition.

    Passed down explicitly; a transition carrying one never fans out.
    """
    source_task_id: uuid.UUID
    group_submission_id: Optional[uuid.UUID] = None


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    # Trigger not available to the actor's role; nothing to do
    IGNORED = "ignored"
    GUARD_REJECTED = "guard_rejected"
    NO_RELATIONSHIP = "no_relationship"


@dataclass
class TransitionResult:
    """What a trigger did to one task, plus any member replicas."""
    outcome: TransitionOutcome
    trigger: Trigger
    status: TaskStatus
    role: Optional[TaskRole] = None
    propagated: List["TransitionResult"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome not in (
            TransitionOutcome.GUARD_REJECTED,
            TransitionOutcome.NO_RELATIONSHIP,
        )

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED
