"""
State machine for the Task status lifecycle.

Task.status is authoritative for submission, assessment and evidence
generation. Which triggers an actor may fire, and what each one does to
the task and its history, is defined here.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.config import Settings, get_settings
from taskflow.errors import ValidationError
from taskflow.kernel.ledger.ledger_service import SubmissionLedger
from taskflow.kernel.models.base import utcnow
from taskflow.kernel.models.task import Task, TaskStatus
from taskflow.kernel.models.user import User
from taskflow.kernel.permissions.task_roles import STAFF_ROLES, STUDENT_ROLES, role_for
from taskflow.logging_config import get_logger
from taskflow.orchestration.group_coordinator import GroupSubmissionCoordinator
from taskflow.orchestration.triggers import (
    ASSESSMENT_TRIGGERS,
    NON_PROPAGATING_STATUSES,
    QUALITY_TRIGGERS,
    SELF_SERVICE_TRIGGERS,
    PropagationContext,
    TransitionOutcome,
    TransitionResult,
    Trigger,
    parse_trigger,
)

logger = get_logger(__name__)


GRADE_ALIASES: Dict[str, int] = {
    "p": 0,
    "c": 1,
    "d": 2,
    "hd": 3,
}

GRADE_DESCRIPTIONS: Dict[int, str] = {
    0: "Pass",
    1: "Credit",
    2: "Distinction",
    3: "High Distinction",
}


def grade_description(grade: Optional[int]) -> Optional[str]:
    """Human readable name of a numeric grade."""
    if grade is None:
        return None
    return GRADE_DESCRIPTIONS.get(grade)


def normalize_grade(grade: Union[str, int], task_id=None) -> int:
    """Convert p|c|d|hd or 0..3 into the numeric grade."""
    if isinstance(grade, bool) or not isinstance(grade, (str, int)):
        raise ValidationError(
            f"New grade supplied to task is not a string or integer (task id {task_id})"
        )
    if isinstance(grade, str):
        key = grade.strip().lower()
        if key not in GRADE_ALIASES:
            raise ValidationError(
                "New grade supplied to task is not a valid string - "
                f"expects one of {{p|c|d|hd}} (task id {task_id})"
            )
        return GRADE_ALIASES[key]
    if grade not in GRADE_DESCRIPTIONS:
        raise ValidationError(
            "New grade supplied to task is not a valid integer - "
            f"expects one of {{0|1|2|3}} (task id {task_id})"
        )
    return grade


class TaskStateMachine:
    """
    Role-gated status transitions with submission and engagement history.

    Usage:
        machine = TaskStateMachine(session)
        result = await machine.trigger_transition(task, "rtm", student)
        if not result.ok:
            ...

    Disallowed transitions never raise. The caller receives a
    TransitionResult whose outcome says why nothing happened.
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.ledger = SubmissionLedger(
            session,
            merge_window=timedelta(minutes=self.settings.submission_merge_window_minutes),
        )
        self.staff_assigned_statuses = frozenset(
            TaskStatus(s) for s in self.settings.staff_assigned_statuses
        )
        self.groups = GroupSubmissionCoordinator(session, self)

    async def trigger_transition(
        self,
        task: Task,
        trigger: Union[str, Trigger],
        actor: Optional[User],
        bulk: bool = False,
        propagation: Optional[PropagationContext] = None,
        quality: int = 1,
    ) -> TransitionResult:
        """
        Fire a status trigger on behalf of an actor.

        Args:
            task: Task to transition
            trigger: Trigger or one of its string aliases
            actor: User requesting the change
            bulk: Part of a batch update; per-task logging is reduced
            propagation: Set when replicating another member's transition
            quality: Quality points recorded with complete/discuss/demonstrate

        Raises:
            UnknownTriggerError: trigger string is not recognised
            ValidationError: quality points outside the definition's range
        """
        trigger = parse_trigger(trigger)
        role = await role_for(self.session, task, actor)

        if role is None:
            logger.info("Ignoring %s on task %s: actor has no role", trigger.value, task.id)
            return TransitionResult(TransitionOutcome.NO_RELATIONSHIP, trigger, task.task_status)

        if role in STUDENT_ROLES:
            if (
                task.definition.restrict_status_updates
                and task.task_status in self.staff_assigned_statuses
            ):
                return TransitionResult(
                    TransitionOutcome.GUARD_REJECTED, trigger, task.task_status, role
                )
            if task.is_closed:
                return TransitionResult(
                    TransitionOutcome.GUARD_REJECTED, trigger, task.task_status, role
                )

        outcome = TransitionOutcome.APPLIED
        if trigger in SELF_SERVICE_TRIGGERS:
            if trigger == Trigger.READY_TO_MARK:
                await self.submit(task)
            else:
                await self.engage(task, SELF_SERVICE_TRIGGERS[trigger])
        elif role in STAFF_ROLES:
            if trigger in QUALITY_TRIGGERS and task.definition.awards_quality_points:
                self._record_quality(task, quality)
            await self.assess(task, ASSESSMENT_TRIGGERS[trigger], actor)
        else:
            outcome = TransitionOutcome.IGNORED

        if not bulk:
            logger.info(
                "Task %s trigger %s by %s (%s): %s -> %s",
                task.log_details,
                trigger.value,
                actor.username,
                role.value,
                outcome.value,
                task.status,
            )

        result = TransitionResult(outcome, trigger, task.task_status, role)

        if (
            result.applied
            and propagation is None
            and task.is_group_task
            and task.task_status not in NON_PROPAGATING_STATUSES
        ):
            result.propagated = await self.groups.propagate_transition(
                task, trigger, actor, quality
            )

        return result

    async def assess(
        self,
        task: Task,
        status: TaskStatus,
        assessor: Optional[User],
        when: Optional[datetime] = None,
    ) -> Task:
        """Apply an assessment outcome and attach it to the latest submission."""
        when = when or utcnow()
        status = TaskStatus(status)

        task.status = status.value
        if task.submission_date is None:
            task.submission_date = when

        # Only a fresh assessment if the work was submitted after the last one
        if task.assessment_date is None or task.assessment_date < task.submission_date:
            task.times_assessed = (task.times_assessed or 0) + 1
        task.assessment_date = when

        self._sync_completion_date(task, when)
        task.project.started = True
        await self.session.flush()

        await self.ledger.record_engagement(task, status)
        await self.ledger.record_assessment(
            task,
            assessor.id if assessor is not None else None,
            when,
            status,
        )
        return task

    async def submit(self, task: Task, when: Optional[datetime] = None) -> Task:
        """Mark the task ready to mark and record the upload attempt."""
        when = when or utcnow()

        task.status = TaskStatus.READY_TO_MARK.value
        task.submission_date = when
        self._sync_completion_date(task, when)
        task.project.started = True
        await self.session.flush()

        await self.ledger.record_engagement(task, TaskStatus.READY_TO_MARK)
        await self.ledger.record_submission(task, when)
        return task

    async def engage(self, task: Task, status: TaskStatus) -> Task:
        """Self-reported progress: status change and engagement only."""
        status = TaskStatus(status)
        task.status = status.value
        self._sync_completion_date(task, utcnow())
        await self.session.flush()

        await self.ledger.record_engagement(task, status)
        return task

    async def grade_task(
        self,
        task: Task,
        grade: Optional[Union[str, int]],
        propagation: Optional[PropagationContext] = None,
    ) -> Optional[int]:
        """
        Grade a task whose definition is graded.

        Group tasks pass the validated grade on to every other member.
        """
        if not task.definition.is_graded:
            if grade is not None:
                raise ValidationError(f"Grade was supplied for a non-graded task (task id {task.id})")
            return None

        if grade is None:
            raise ValidationError(f"No grade was supplied for a graded task (task id {task.id})")

        value = normalize_grade(grade, task.id)

        if propagation is None and task.is_group_task:
            logger.debug("Grading group submission for task %s to %d", task.id, value)
            await self.groups.propagate_grade(task, value)

        task.grade = value
        await self.session.flush()
        return value

    def _record_quality(self, task: Task, quality: int) -> None:
        maximum = task.definition.max_quality_pts
        if isinstance(quality, bool) or not isinstance(quality, int) or not 0 <= quality <= maximum:
            raise ValidationError(f"Quality points must be between 0 and {maximum}")
        task.quality_pts = quality

    @staticmethod
    def _sync_completion_date(task: Task, when: datetime) -> None:
        # completion_date is set exactly while the status is complete-equivalent
        if task.ready_or_complete:
            if task.completion_date is None:
                task.completion_date = when
        else:
            task.completion_date = None
