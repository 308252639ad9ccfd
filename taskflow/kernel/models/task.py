"""
Task definitions and task instances.

Task.status is authoritative for submission, assessment and evidence
generation. Status changes go through TaskStateMachine only.
"""

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, FrozenSet, List, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskflow.kernel.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid

if TYPE_CHECKING:
    from taskflow.kernel.models.project import Project
    from taskflow.kernel.models.group_submission import GroupSubmission


class TaskStatus(str, Enum):
    """Status of a task."""

    NOT_STARTED = "not_started"
    NEED_HELP = "need_help"
    WORKING_ON_IT = "working_on_it"
    READY_TO_MARK = "ready_to_mark"
    DISCUSS = "discuss"
    DEMONSTRATE = "demonstrate"
    COMPLETE = "complete"
    FIX_AND_RESUBMIT = "fix_and_resubmit"
    REDO = "redo"
    DO_NOT_RESUBMIT = "do_not_resubmit"
    FAIL = "fail"


# No further student submissions once a task reaches one of these
CLOSED_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.COMPLETE,
    TaskStatus.DISCUSS,
    TaskStatus.DEMONSTRATE,
    TaskStatus.DO_NOT_RESUBMIT,
    TaskStatus.FAIL,
})

# Statuses that carry a completion date
COMPLETE_EQUIVALENT_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.COMPLETE,
    TaskStatus.DISCUSS,
    TaskStatus.DEMONSTRATE,
    TaskStatus.READY_TO_MARK,
})

ASSESSED_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.REDO,
    TaskStatus.FIX_AND_RESUBMIT,
    TaskStatus.DO_NOT_RESUBMIT,
    TaskStatus.FAIL,
    TaskStatus.COMPLETE,
})


class UploadType(str, Enum):
    """Kinds of file an upload requirement can ask for."""
    COVER = "cover"
    DOCUMENT = "document"
    CODE = "code"
    IMAGE = "image"


class TaskDefinition(Base, TimestampMixin):
    """Template for a task: upload requirements, grading and group rules."""

    __tablename__ = "task_definitions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    abbreviation: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # Ordered list of {"name": ..., "type": cover|document|code|image}
    upload_requirements: Mapped[List[dict]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    max_quality_pts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    restrict_status_updates: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    is_graded: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    group_set_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("group_sets.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def awards_quality_points(self) -> bool:
        return self.max_quality_pts > 0

    def __repr__(self) -> str:
        return f"<TaskDefinition {self.abbreviation}>"


class Task(Base, TimestampMixin):
    """One project's instance of a task definition."""

    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    task_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("task_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    group_submission_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("group_submissions.id", ondelete="SET NULL", use_alter=True),
        nullable=True,
        index=True,
    )

    status: Mapped[TaskStatus] = mapped_column(
        String(50),
        default=TaskStatus.NOT_STARTED,
        nullable=False,
    )
    quality_pts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    grade: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    submission_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    assessment_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completion_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    file_uploaded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    times_assessed: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Path of the rendered evidence PDF; null until a render succeeds
    portfolio_evidence: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
    )

    definition: Mapped["TaskDefinition"] = relationship(
        "TaskDefinition",
        lazy="selectin",
    )
    project: Mapped["Project"] = relationship(
        "Project",
        lazy="selectin",
    )
    group_submission: Mapped[Optional["GroupSubmission"]] = relationship(
        "GroupSubmission",
        foreign_keys=[group_submission_id],
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_tasks_definition_project", "task_definition_id", "project_id", unique=True),
    )

    @property
    def task_status(self) -> TaskStatus:
        return TaskStatus(self.status)

    @property
    def is_closed(self) -> bool:
        return self.task_status in CLOSED_STATUSES

    @property
    def ready_or_complete(self) -> bool:
        return self.task_status in COMPLETE_EQUIVALENT_STATUSES

    @property
    def ok_to_submit(self) -> bool:
        return self.task_status not in (
            TaskStatus.COMPLETE,
            TaskStatus.DISCUSS,
            TaskStatus.DEMONSTRATE,
        )

    @property
    def is_assessed(self) -> bool:
        return self.task_status in ASSESSED_STATUSES

    @property
    def is_group_task(self) -> bool:
        return self.group_submission_id is not None or self.definition.group_set_id is not None

    @property
    def has_evidence(self) -> bool:
        return self.portfolio_evidence is not None and Path(self.portfolio_evidence).exists()

    @property
    def log_details(self) -> str:
        return f"{self.id} - {self.definition.abbreviation}"

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.status}>"
