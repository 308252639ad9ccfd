"""
Submission ledger: engagement log and submission records for tasks.

Engagements are append-only. Submission records are merged only against
the latest record for a task, never an older one.
"""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.config import get_settings
from taskflow.kernel.models.base import utcnow
from taskflow.kernel.models.ledger import TaskEngagement, TaskSubmission
from taskflow.kernel.models.task import Task, TaskStatus


class SubmissionLedger:
    """
    Accounting for a task's engagement and submission history.

    Usage:
        ledger = SubmissionLedger(session)
        await ledger.record_engagement(task, TaskStatus.WORKING_ON_IT)
        await ledger.record_submission(task, submitted_at=now)

    The ledger never changes Task.status; TaskStateMachine owns that.
    """

    def __init__(self, session: AsyncSession, merge_window: Optional[timedelta] = None):
        self.session = session
        if merge_window is None:
            merge_window = timedelta(minutes=get_settings().submission_merge_window_minutes)
        self.merge_window = merge_window

    async def record_engagement(self, task: Task, status: TaskStatus) -> TaskEngagement:
        """Append an engagement entry stamped with the current time."""
        engagement = TaskEngagement(
            task_id=task.id,
            engagement_time=utcnow(),
            engagement=TaskStatus(status).value,
        )
        self.session.add(engagement)
        await self.session.flush()
        return engagement

    async def latest_submission(self, task_id: uuid.UUID) -> Optional[TaskSubmission]:
        """Most recent submission record by submission time."""
        query = (
            select(TaskSubmission)
            .where(TaskSubmission.task_id == task_id)
            .order_by(desc(TaskSubmission.submission_time))
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def record_submission(self, task: Task, submitted_at: datetime) -> TaskSubmission:
        """
        Record an upload attempt.

        An unassessed latest record inside the merge window absorbs the new
        attempt (its time moves forward); anything else creates a record.
        """
        latest = await self.latest_submission(task.id)

        if (
            latest is not None
            and not latest.is_assessed
            and submitted_at < latest.submission_time + self.merge_window
        ):
            latest.submission_time = submitted_at
            await self.session.flush()
            return latest

        submission = TaskSubmission(task_id=task.id, submission_time=submitted_at)
        self.session.add(submission)
        await self.session.flush()
        return submission

    async def record_assessment(
        self,
        task: Task,
        assessor_id: Optional[uuid.UUID],
        assessed_at: datetime,
        outcome: TaskStatus,
    ) -> TaskSubmission:
        """Attach an assessment to the latest submission, creating one if none exists."""
        submission = await self.latest_submission(task.id)

        if submission is None:
            submission = TaskSubmission(task_id=task.id, submission_time=assessed_at)
            self.session.add(submission)

        submission.assessor_id = assessor_id
        submission.assessment_time = assessed_at
        submission.outcome = TaskStatus(outcome).value
        await self.session.flush()
        return submission

    async def engagements_for(self, task_id: uuid.UUID) -> List[TaskEngagement]:
        """Engagement history, oldest first."""
        query = (
            select(TaskEngagement)
            .where(TaskEngagement.task_id == task_id)
            .order_by(asc(TaskEngagement.engagement_time))
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def submissions_for(self, task_id: uuid.UUID) -> List[TaskSubmission]:
        """Submission records, oldest first."""
        query = (
            select(TaskSubmission)
            .where(TaskSubmission.task_id == task_id)
            .order_by(asc(TaskSubmission.submission_time))
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_engagements(self, task_ids: List[uuid.UUID]) -> int:
        """Number of engagement entries across the given tasks."""
        query = select(func.count(TaskEngagement.id)).where(TaskEngagement.task_id.in_(task_ids))
        result = await self.session.execute(query)
        return result.scalar() or 0
