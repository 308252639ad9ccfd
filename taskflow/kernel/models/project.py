"""
Project (a student's enrolment in a unit) and group models.
"""

import uuid
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskflow.kernel.models.base import Base, TimestampMixin, generate_uuid

if TYPE_CHECKING:
    from taskflow.kernel.models.user import User


class Project(Base, TimestampMixin):
    """A student's enrolment context for a unit."""

    __tablename__ = "projects"

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
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Primary assessor; failures in automated processing are attributed here
    main_tutor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    started: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    student: Mapped["User"] = relationship(
        "User",
        foreign_keys=[user_id],
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Project {self.id} user={self.user_id}>"


class GroupSet(Base, TimestampMixin):
    """A named way of dividing a unit's students into groups."""

    __tablename__ = "group_sets"

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


class Group(Base, TimestampMixin):
    """One group within a group set."""

    __tablename__ = "groups"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    group_set_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("group_sets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Group {self.name}>"


class GroupMembership(Base, TimestampMixin):
    """Links a project to the group it belongs to."""

    __tablename__ = "group_memberships"

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
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_group_memberships_group_project", "group_id", "project_id", unique=True),
    )
