"""
Users, units and the per-unit roles that decide who may act on a task.
"""

import uuid
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from taskflow.kernel.models.base import Base, TimestampMixin, generate_uuid


class UnitRoleKind(str, Enum):
    """Roles a user can hold within a unit."""
    STUDENT = "student"
    TUTOR = "tutor"
    CONVENOR = "convenor"


class User(Base, TimestampMixin):
    """User account model."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    username: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        index=True,
        nullable=False,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    full_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User {self.username}>"


class Unit(Base, TimestampMixin):
    """A unit offering that owns task definitions and projects."""

    __tablename__ = "units"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    code: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Unit {self.code}>"


class UnitRole(Base, TimestampMixin):
    """A user's role within one unit. Unique per (unit, user)."""

    __tablename__ = "unit_roles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("units.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[UnitRoleKind] = mapped_column(
        String(20),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_unit_roles_unit_user", "unit_id", "user_id", unique=True),
    )

    @property
    def is_staff(self) -> bool:
        return UnitRoleKind(self.role) in (UnitRoleKind.TUTOR, UnitRoleKind.CONVENOR)

    def __repr__(self) -> str:
        return f"<UnitRole {self.user_id} {self.role}>"
