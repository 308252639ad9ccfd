"""
Group submission models.

A GroupSubmission is one physical submission shared by the task of every
group member. The submitter task's files are the canonical ones.
"""

import uuid
from typing import List, Optional

from sqlalchemy import ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskflow.kernel.models.base import Base, TimestampMixin, generate_uuid


class GroupSubmission(Base, TimestampMixin):
    """Submission shared by every member task of a group."""

    __tablename__ = "group_submissions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=False,
    )
    task_definition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("task_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Destroyed with the submitter's task; member tasks are then detached
    submitter_task_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Bumped on every group-wide (re)submission; renders started under an
    # older generation must not publish their evidence path.
    generation: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    contributions: Mapped[List["GroupContribution"]] = relationship(
        "GroupContribution",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_group_submissions_group_definition", "group_id", "task_definition_id"),
    )

    def __repr__(self) -> str:
        return f"<GroupSubmission {self.id} gen={self.generation}>"


class GroupContribution(Base):
    """One member's declared share of a group submission."""

    __tablename__ = "group_contributions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    group_submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("group_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    pct: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    pts: Mapped[int] = mapped_column(
        Integer,
        default=3,
        nullable=False,
    )
