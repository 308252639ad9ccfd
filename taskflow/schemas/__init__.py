"""
Pydantic schemas for API request/response validation.
"""

from taskflow.schemas.submission import (
    UploadRequirement,
    IncomingFile,
    ContributionInput,
    AlignmentInput,
)
from taskflow.schemas.task import (
    TaskStatusUpdate,
    TaskResponse,
    TransitionResponse,
    TaskSubmissionResponse,
    EngagementResponse,
    SubmissionReceiptResponse,
)

__all__ = [
    # Submission
    "UploadRequirement",
    "IncomingFile",
    "ContributionInput",
    "AlignmentInput",
    # Task
    "TaskStatusUpdate",
    "TaskResponse",
    "TransitionResponse",
    "TaskSubmissionResponse",
    "EngagementResponse",
    "SubmissionReceiptResponse",
]
