"""
Role resolution for actors on a task.

An actor's role comes from their relationship to the task's project:
the owning student, a tutor or convenor of the unit, or a member of the
group the task is shared with. No relationship means no role.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.kernel.models.project import Group, GroupMembership, Project
from taskflow.kernel.models.task import Task
from taskflow.kernel.models.user import UnitRole, UnitRoleKind, User
from taskflow.logging_config import get_logger

logger = get_logger(__name__)


class TaskRole(str, Enum):
    """Relationship of an actor to a task."""
    STUDENT = "student"
    GROUP_MEMBER = "group_member"
    TUTOR = "tutor"
    CONVENOR = "convenor"


STUDENT_ROLES: FrozenSet[TaskRole] = frozenset({TaskRole.STUDENT, TaskRole.GROUP_MEMBER})
STAFF_ROLES: FrozenSet[TaskRole] = frozenset({TaskRole.TUTOR, TaskRole.CONVENOR})


class TaskAction(str, Enum):
    """Actions checked by the HTTP adapter."""
    GET = "get"
    PUT = "put"
    GET_SUBMISSION = "get_submission"
    MAKE_SUBMISSION = "make_submission"


_STUDENT_ACTIONS = frozenset({
    TaskAction.GET,
    TaskAction.PUT,
    TaskAction.GET_SUBMISSION,
    TaskAction.MAKE_SUBMISSION,
})

# Convenors hold every action, put included, so they can fire status triggers
TASK_PERMISSIONS: Dict[Optional[TaskRole], FrozenSet[TaskAction]] = {
    TaskRole.STUDENT: _STUDENT_ACTIONS,
    TaskRole.GROUP_MEMBER: _STUDENT_ACTIONS,
    TaskRole.TUTOR: _STUDENT_ACTIONS,
    TaskRole.CONVENOR: _STUDENT_ACTIONS,
    None: frozenset(),
}


def has_task_permission(role: Optional[TaskRole], action: TaskAction) -> bool:
    """Check the permission table for a role."""
    return action in TASK_PERMISSIONS.get(role, frozenset())


async def find_group(session: AsyncSession, task: Task) -> Optional[Group]:
    """
    Locate the task's group through the unit's current groups.

    Membership may change after a submission, so the group set on the
    definition is consulted rather than the group submission.
    """
    group_set_id = task.definition.group_set_id
    if group_set_id is None:
        if task.group_submission is None:
            return None
        return await session.get(Group, task.group_submission.group_id)

    query = (
        select(Group)
        .join(GroupMembership, GroupMembership.group_id == Group.id)
        .where(
            and_(
                Group.group_set_id == group_set_id,
                GroupMembership.project_id == task.project_id,
            )
        )
        .limit(1)
    )
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def group_projects(session: AsyncSession, group: Group) -> List[Project]:
    """Projects of every member of a group."""
    query = (
        select(Project)
        .join(GroupMembership, GroupMembership.project_id == Project.id)
        .where(GroupMembership.group_id == group.id)
        .order_by(Project.created_at)
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def group_has_user(session: AsyncSession, group: Group, user: User) -> bool:
    query = (
        select(GroupMembership.id)
        .join(Project, Project.id == GroupMembership.project_id)
        .where(
            and_(
                GroupMembership.group_id == group.id,
                Project.user_id == user.id,
            )
        )
        .limit(1)
    )
    result = await session.execute(query)
    return result.scalar_one_or_none() is not None


async def role_for(session: AsyncSession, task: Task, user: Optional[User]) -> Optional[TaskRole]:
    """
    Resolve the actor's role on a task.

    Precedence: project owner, unit staff role, group membership.
    """
    if user is None:
        return None

    project = task.project
    if project.user_id == user.id:
        return TaskRole.STUDENT

    query = select(UnitRole).where(
        and_(
            UnitRole.unit_id == project.unit_id,
            UnitRole.user_id == user.id,
        )
    )
    result = await session.execute(query)
    unit_role = result.scalar_one_or_none()
    if unit_role is not None and unit_role.is_staff:
        return TaskRole(UnitRoleKind(unit_role.role).value)

    if task.is_group_task:
        logger.debug(
            "Checking group membership",
            extra={"task_id": str(task.id), "user_id": str(user.id)},
        )
        group = await find_group(session, task)
        if group is not None and await group_has_user(session, group, user):
            return TaskRole.GROUP_MEMBER

    return None
