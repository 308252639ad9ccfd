"""
Submission Engine - upload validation, per-task locking and processing.
"""

from taskflow.engines.submission.pipeline import (
    RenderOutcome,
    SubmissionPipeline,
    SubmissionReceipt,
)
from taskflow.engines.submission.locks import KeyedLocks, task_lock_key
from taskflow.engines.submission.validation import validate_incoming

__all__ = [
    "RenderOutcome",
    "SubmissionPipeline",
    "SubmissionReceipt",
    "KeyedLocks",
    "task_lock_key",
    "validate_incoming",
]
