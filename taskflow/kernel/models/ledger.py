"""
Submission and engagement history for tasks.

TaskEngagement is append-only: rows are never updated or deleted.
TaskSubmission rows are mutable only until an assessor is attached.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.kernel.models.base import Base, UTCDateTime, generate_uuid, utcnow


class TaskSubmission(Base):
    """One distinct upload attempt and its eventual assessment."""

    __tablename__ = "task_submissions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    submission_time: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )
    assessor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    assessment_time: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    outcome: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_task_submissions_task_time", "task_id", "submission_time"),
    )

    @property
    def is_assessed(self) -> bool:
        return self.assessor_id is not None

    def __repr__(self) -> str:
        return f"<TaskSubmission {self.task_id} at={self.submission_time}>"


class TaskEngagement(Base):
    """Audit entry recording one status change of a task."""

    __tablename__ = "task_engagements"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
    )
    engagement_time: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    engagement: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_task_engagements_task_time", "task_id", "engagement_time"),
    )

    def __repr__(self) -> str:
        return f"<TaskEngagement {self.task_id} {self.engagement}>"
