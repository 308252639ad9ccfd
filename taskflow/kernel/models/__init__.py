"""
Kernel Data Models

SQLAlchemy models for tasks, their submission history and the group and
enrolment records the state machine consults.
"""

from taskflow.kernel.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid, utcnow
from taskflow.kernel.models.user import User, Unit, UnitRole, UnitRoleKind
from taskflow.kernel.models.project import Project, GroupSet, Group, GroupMembership
from taskflow.kernel.models.task import (
    Task,
    TaskDefinition,
    TaskStatus,
    UploadType,
    CLOSED_STATUSES,
    COMPLETE_EQUIVALENT_STATUSES,
    ASSESSED_STATUSES,
)
from taskflow.kernel.models.group_submission import GroupSubmission, GroupContribution
from taskflow.kernel.models.ledger import TaskSubmission, TaskEngagement
from taskflow.kernel.models.alignment import LearningOutcomeTaskLink

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "generate_uuid",
    "utcnow",
    # Users & units
    "User",
    "Unit",
    "UnitRole",
    "UnitRoleKind",
    # Projects & groups
    "Project",
    "GroupSet",
    "Group",
    "GroupMembership",
    # Tasks
    "Task",
    "TaskDefinition",
    "TaskStatus",
    "UploadType",
    "CLOSED_STATUSES",
    "COMPLETE_EQUIVALENT_STATUSES",
    "ASSESSED_STATUSES",
    # Group submissions
    "GroupSubmission",
    "GroupContribution",
    # History
    "TaskSubmission",
    "TaskEngagement",
    # Alignment
    "LearningOutcomeTaskLink",
]
