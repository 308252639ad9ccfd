"""
Group submission coordination.

One physical submission is shared by the task of every group member. The
coordinator keeps those member tasks consistent: it creates the shared
GroupSubmission, replays transitions and grades onto the other members,
and decides whether a member's upload collides with another in flight.
"""

from typing import TYPE_CHECKING, List, Optional, Sequence, Union

from sqlalchemy import and_, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.errors import ValidationError
from taskflow.kernel.models.base import generate_uuid
from taskflow.kernel.models.group_submission import GroupContribution, GroupSubmission
from taskflow.kernel.models.project import Group, Project
from taskflow.kernel.models.task import Task, TaskStatus
from taskflow.kernel.models.user import User
from taskflow.kernel.permissions.task_roles import find_group, group_projects
from taskflow.logging_config import get_logger
from taskflow.orchestration.triggers import PropagationContext, TransitionResult, Trigger
from taskflow.schemas.submission import ContributionInput

if TYPE_CHECKING:
    from taskflow.engines.staging.store import StagingStore
    from taskflow.orchestration.state_machine import TaskStateMachine

logger = get_logger(__name__)

DEFAULT_CONTRIBUTION_PTS = 3


class GroupSubmissionCoordinator:
    """
    Fan-out of transitions and grades across a group's member tasks.

    Created by TaskStateMachine, which it calls back into for each member
    with a PropagationContext so that replicas never fan out again.
    """

    def __init__(self, session: AsyncSession, machine: "TaskStateMachine"):
        self.session = session
        self.machine = machine

    async def group_for(self, task: Task) -> Optional[Group]:
        if not task.is_group_task:
            return None
        return await find_group(self.session, task)

    async def member_tasks(self, group_submission: GroupSubmission) -> List[Task]:
        """Every task attached to a group submission, oldest first."""
        query = (
            select(Task)
            .where(Task.group_submission_id == group_submission.id)
            .order_by(Task.created_at)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def _latest_for_group(self, group: Group, task: Task) -> Optional[GroupSubmission]:
        query = (
            select(GroupSubmission)
            .where(
                and_(
                    GroupSubmission.group_id == group.id,
                    GroupSubmission.task_definition_id == task.task_definition_id,
                )
            )
            .order_by(desc(GroupSubmission.created_at))
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def ensure_group_submission(self, task: Task) -> Optional[GroupSubmission]:
        """
        Return the task's group submission, creating it on first use.

        A task joining a group that already has a submission is attached to
        it without starting a new generation.
        """
        if not task.is_group_task:
            return None
        if task.group_submission is not None:
            return task.group_submission

        group = await self.group_for(task)
        if group is None:
            return None

        existing = await self._latest_for_group(group, task)
        if existing is not None:
            task.group_submission = existing
            await self.session.flush()
            return existing

        return await self.create_submission(task, "", None)

    async def create_submission(
        self,
        initiator: Task,
        notes: Optional[str],
        contributions: Optional[Sequence[ContributionInput]] = None,
    ) -> GroupSubmission:
        """
        Record a group-wide submission with the initiator as submitter.

        Without explicit contributions every member gets an even share
        (100 // member count percent, 3 points). Reusing an existing group
        submission starts a new generation.
        """
        group = await self.group_for(initiator)
        if group is None:
            raise ValidationError("You must be in a group to submit this task.")

        projects = await group_projects(self.session, group)
        member_ids = {p.id for p in projects}

        if contributions is None:
            share = 100 // max(len(projects), 1)
            rows = [(p.id, share, DEFAULT_CONTRIBUTION_PTS) for p in projects]
        else:
            rows = []
            for contribution in contributions:
                if contribution.project_id not in member_ids:
                    raise ValidationError(
                        f"Contribution names project {contribution.project_id}, "
                        "which is not a member of this group."
                    )
                rows.append((contribution.project_id, contribution.pct, contribution.pts))

        group_submission = initiator.group_submission
        if group_submission is None or group_submission.group_id != group.id:
            group_submission = await self._latest_for_group(group, initiator)

        if group_submission is None:
            group_submission = GroupSubmission(
                id=generate_uuid(),
                group_id=group.id,
                task_definition_id=initiator.task_definition_id,
                submitter_task_id=initiator.id,
                notes=notes,
                generation=1,
            )
            self.session.add(group_submission)
        else:
            group_submission.submitter_task_id = initiator.id
            group_submission.notes = notes
            group_submission.generation = (group_submission.generation or 0) + 1
            group_submission.contributions.clear()

        for project_id, pct, pts in rows:
            group_submission.contributions.append(
                GroupContribution(project_id=project_id, pct=pct, pts=pts)
            )
        await self.session.flush()

        for task in await self._tasks_for_projects(initiator, projects):
            task.group_submission = group_submission
        await self.session.flush()

        logger.info(
            "Group submission %s (generation %d) for %s by task %s",
            group_submission.id,
            group_submission.generation,
            group.name,
            initiator.id,
        )
        return group_submission

    async def _tasks_for_projects(self, initiator: Task, projects: List[Project]) -> List[Task]:
        """Member tasks of the initiator's definition, creating missing ones."""
        query = select(Task).where(
            and_(
                Task.task_definition_id == initiator.task_definition_id,
                Task.project_id.in_([p.id for p in projects]),
            )
        )
        result = await self.session.execute(query)
        by_project = {t.project_id: t for t in result.scalars().all()}

        tasks = []
        for project in projects:
            task = by_project.get(project.id)
            if task is None:
                task = Task(
                    id=generate_uuid(),
                    definition=initiator.definition,
                    project=project,
                    status=TaskStatus.NOT_STARTED.value,
                    quality_pts=0,
                    times_assessed=0,
                )
                self.session.add(task)
            tasks.append(task)
        await self.session.flush()
        return tasks

    async def propagate_transition(
        self,
        source: Task,
        trigger: Trigger,
        actor: Optional[User],
        quality: int = 1,
    ) -> List[TransitionResult]:
        """Replay a trigger on every other member task, exactly once each."""
        group_submission = await self.ensure_group_submission(source)
        if group_submission is None:
            return []

        context = PropagationContext(
            source_task_id=source.id,
            group_submission_id=group_submission.id,
        )
        results = []
        for member in await self.member_tasks(group_submission):
            if member.id == source.id:
                continue
            results.append(
                await self.machine.trigger_transition(
                    member,
                    trigger,
                    actor,
                    propagation=context,
                    quality=quality,
                )
            )
        return results

    async def propagate_grade(self, source: Task, grade: Union[str, int]) -> None:
        """Apply an already validated grade to every other member task."""
        group_submission = await self.ensure_group_submission(source)
        if group_submission is None:
            return

        context = PropagationContext(
            source_task_id=source.id,
            group_submission_id=group_submission.id,
        )
        for member in await self.member_tasks(group_submission):
            if member.id == source.id:
                continue
            await self.machine.grade_task(member, grade, propagation=context)

    async def processing_conflict(self, task: Task, store: "StagingStore") -> bool:
        """
        True while another member's upload for this group is being processed.

        The submitter re-uploading its own work is not a conflict; that
        upload waits on the staging lock instead.
        """
        group_submission = task.group_submission
        if group_submission is None:
            return False
        if group_submission.submitter_task_id in (None, task.id):
            return False
        return store.area_for_key(str(group_submission.id)).is_processing

    async def conflicting_submitter_name(self, task: Task) -> Optional[str]:
        group_submission = task.group_submission
        if group_submission is None or group_submission.submitter_task_id is None:
            return None
        submitter = await self.session.get(Task, group_submission.submitter_task_id)
        if submitter is None:
            return None
        return submitter.project.student.full_name
