"""
Permission Core - actor roles on tasks.
"""

from taskflow.kernel.permissions.task_roles import (
    TaskRole,
    TaskAction,
    STUDENT_ROLES,
    STAFF_ROLES,
    has_task_permission,
    role_for,
)

__all__ = [
    "TaskRole",
    "TaskAction",
    "STUDENT_ROLES",
    "STAFF_ROLES",
    "has_task_permission",
    "role_for",
]
