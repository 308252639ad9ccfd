"""
Pydantic schemas for uploads and their accompanying metadata.
"""

import uuid
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from taskflow.kernel.models.task import UploadType


class UploadRequirement(BaseModel):
    """One entry of a task definition's ordered upload requirements."""

    name: str
    type: UploadType


class IncomingFile(BaseModel):
    """
    A file received with an upload request.

    Every field is optional here so that incomplete descriptors reach the
    pipeline, which rejects them with a descriptive message.
    """

    identifier: Optional[str] = None  # form field key, e.g. file0
    display_name: Optional[str] = None  # requirement name shown to the student
    stored_filename: Optional[str] = None  # the student's own file name
    declared_type: Optional[UploadType] = None
    temporary_path: Optional[Path] = None

    @property
    def label(self) -> str:
        return self.display_name or self.stored_filename or self.identifier or "file"


class ContributionInput(BaseModel):
    """Explicit share of a group submission for one member project."""

    project_id: uuid.UUID
    pct: int = Field(..., ge=0, le=100)
    pts: int = Field(3, ge=0)


class AlignmentInput(BaseModel):
    """Student's self-assessed alignment of the task with a learning outcome."""

    outcome_id: uuid.UUID
    rating: int = Field(..., ge=0, le=5)
    rationale: Optional[str] = None
