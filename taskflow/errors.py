"""
Error taxonomy for task transitions and the submission pipeline.

Guard failures are not exceptions: the state machine reports them as a
TransitionOutcome. Everything a caller must see is a TaskflowError, which
renders to the rejection payload ``{"error": message}``.
"""

from typing import Any, Dict, Optional

FORBIDDEN = "forbidden"
PROCESSING = "processing"


class TaskflowError(Exception):
    """Base class for errors surfaced to callers."""

    category: str = PROCESSING

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(TaskflowError):
    """Malformed, oversized or mistyped upload, bad grade, missing group."""

    category = FORBIDDEN


class UnknownTriggerError(ValidationError):
    """A trigger string that maps to no transition."""

    def __init__(self, trigger: str):
        super().__init__(f"Unknown status trigger '{trigger}'")
        self.trigger = trigger


class PermissionDeniedError(TaskflowError):
    """The actor's role on the task does not allow the action."""

    category = FORBIDDEN


class ConflictError(TaskflowError):
    """Another group member's submission is still being processed."""

    category = FORBIDDEN

    def __init__(self, submitter_name: str):
        super().__init__(
            f"{submitter_name} has just submitted this task. Only one team member "
            "needs to submit this task, so check back soon to see what was uploaded."
        )
        self.submitter_name = submitter_name


class StagingError(TaskflowError):
    """The staging area holds nothing that can be processed."""


class MissingFileError(TaskflowError):
    """A required upload could not be located after staging."""

    def __init__(self, requirement: str):
        super().__init__(f"File `{requirement}` missing from submission.")
        self.requirement = requirement


class RenderError(TaskflowError):
    """Evidence rendering failed on both encoding attempts."""

    def __init__(self, message: str, log_excerpt: Optional[str] = None):
        super().__init__(message)
        self.log_excerpt = log_excerpt

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.log_excerpt:
            payload["log"] = self.log_excerpt
        return payload
