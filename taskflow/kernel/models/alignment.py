"""
Learning outcome alignment recorded alongside a submission.
"""

import uuid
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.kernel.models.base import Base, TimestampMixin, generate_uuid


class LearningOutcomeTaskLink(Base, TimestampMixin):
    """A student's rating of how a task addresses one learning outcome."""

    __tablename__ = "learning_outcome_task_links"

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
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Outcome catalogue lives outside this service
    learning_outcome_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
    )
    rating: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        Index(
            "ix_outcome_links_definition_outcome_task",
            "task_definition_id",
            "learning_outcome_id",
            "task_id",
            unique=True,
        ),
    )
