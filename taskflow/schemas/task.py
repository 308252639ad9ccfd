"""
Pydantic schemas for task status, history and submission responses.
"""

import uuid
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class TaskStatusUpdate(BaseModel):
    """Request to fire a status trigger (or alias) on a task."""

    trigger: str = Field(..., min_length=1, max_length=50)
    quality: int = Field(1, ge=0)
    grade: Optional[Union[str, int]] = None


class TaskResponse(BaseModel):
    """Task state as seen by students and staff."""

    id: uuid.UUID
    task_definition_id: uuid.UUID
    project_id: uuid.UUID
    abbreviation: str
    status: str
    quality_pts: int
    grade: Optional[int] = None
    grade_description: Optional[str] = None
    submission_date: Optional[datetime] = None
    assessment_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    file_uploaded_at: Optional[datetime] = None
    times_assessed: int
    has_evidence: bool
    processing: bool = False
    group_submission_id: Optional[uuid.UUID] = None


class TransitionResponse(BaseModel):
    """Result of a status trigger."""

    outcome: str
    status: str
    role: Optional[str] = None
    propagated: int = 0
    task: TaskResponse


class TaskSubmissionResponse(BaseModel):
    """One upload attempt and its assessment."""

    id: uuid.UUID
    submission_time: datetime
    assessor_id: Optional[uuid.UUID] = None
    assessment_time: Optional[datetime] = None
    outcome: Optional[str] = None

    class Config:
        from_attributes = True


class EngagementResponse(BaseModel):
    """One entry of the status change log."""

    id: uuid.UUID
    engagement_time: datetime
    engagement: str

    class Config:
        from_attributes = True


class SubmissionReceiptResponse(BaseModel):
    """Response to an accepted upload."""

    task_id: uuid.UUID
    status: str
    outcome: str
    group_submission_id: Optional[uuid.UUID] = None
    files: List[str]
