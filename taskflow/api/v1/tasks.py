"""Task status, history and submission endpoints."""

import json
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaValidationError
from starlette.datastructures import UploadFile

from taskflow.api.deps import CurrentUser, DbSession, Pipeline
from taskflow.engines.submission.pipeline import SubmissionPipeline
from taskflow.errors import PermissionDeniedError, ValidationError
from taskflow.kernel.ledger.ledger_service import SubmissionLedger
from taskflow.kernel.models.task import Task
from taskflow.kernel.models.user import User
from taskflow.kernel.permissions.task_roles import (
    STAFF_ROLES,
    TaskAction,
    TaskRole,
    has_task_permission,
    role_for,
)
from taskflow.logging_config import get_logger
from taskflow.orchestration.state_machine import TaskStateMachine, grade_description
from taskflow.orchestration.triggers import Trigger
from taskflow.schemas.submission import (
    AlignmentInput,
    ContributionInput,
    IncomingFile,
    UploadRequirement,
)
from taskflow.schemas.task import (
    EngagementResponse,
    SubmissionReceiptResponse,
    TaskResponse,
    TaskStatusUpdate,
    TaskSubmissionResponse,
    TransitionResponse,
)

router = APIRouter()
logger = get_logger(__name__)

_contributions_adapter = TypeAdapter(List[ContributionInput])
_alignments_adapter = TypeAdapter(List[AlignmentInput])


async def _load_task(db: DbSession, task_id: uuid.UUID) -> Task:
    task = await db.get(Task, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


async def _require(db: DbSession, task: Task, user: User, action: TaskAction) -> Optional[TaskRole]:
    role = await role_for(db, task, user)
    if not has_task_permission(role, action):
        logger.info("Denied %s on task %s to user %s", action.value, task.id, user.id)
        raise PermissionDeniedError(f"You do not have permission to {action.value.replace('_', ' ')} this task.")
    return role


def _task_response(task: Task, pipeline: SubmissionPipeline) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        task_definition_id=task.task_definition_id,
        project_id=task.project_id,
        abbreviation=task.definition.abbreviation,
        status=task.status,
        quality_pts=task.quality_pts,
        grade=task.grade,
        grade_description=grade_description(task.grade),
        submission_date=task.submission_date,
        assessment_date=task.assessment_date,
        completion_date=task.completion_date,
        file_uploaded_at=task.file_uploaded_at,
        times_assessed=task.times_assessed,
        has_evidence=task.has_evidence,
        processing=pipeline.area_for(task).is_processing,
        group_submission_id=task.group_submission_id,
    )


def _parse_json_field(raw, adapter: TypeAdapter, field: str):
    if raw is None or raw == "":
        return None
    try:
        return adapter.validate_python(json.loads(raw))
    except (json.JSONDecodeError, SchemaValidationError) as exc:
        raise ValidationError(f"Invalid {field}: {exc}") from exc


async def _incoming_files(form, task: Task, workdir: Path) -> List[IncomingFile]:
    """
    Save the uploaded parts to disk, one per upload requirement.

    The requirement at position i is expected in form field ``file<i>``;
    an absent part produces a descriptor without a temporary path.
    """
    files = []
    for index, raw in enumerate(task.definition.upload_requirements or []):
        requirement = UploadRequirement.model_validate(raw)
        identifier = f"file{index}"
        part = form.get(identifier)

        if not isinstance(part, UploadFile):
            files.append(
                IncomingFile(
                    identifier=identifier,
                    display_name=requirement.name,
                    declared_type=requirement.type,
                )
            )
            continue

        temporary_path = workdir / f"{index:03d}{Path(part.filename or '').suffix}"
        with temporary_path.open("wb") as out:
            shutil.copyfileobj(part.file, out)
        files.append(
            IncomingFile(
                identifier=identifier,
                display_name=requirement.name,
                stored_filename=part.filename or identifier,
                declared_type=requirement.type,
                temporary_path=temporary_path,
            )
        )
    return files


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
    pipeline: Pipeline,
):
    """Get a task's status and dates."""
    task = await _load_task(db, task_id)
    await _require(db, task, user, TaskAction.GET)
    return _task_response(task, pipeline)


@router.put("/{task_id}/status", response_model=TransitionResponse)
async def update_task_status(
    task_id: uuid.UUID,
    data: TaskStatusUpdate,
    user: CurrentUser,
    db: DbSession,
    pipeline: Pipeline,
):
    """
    Fire a status trigger on a task.

    Transitions the actor may not make leave the task unchanged; the
    response's outcome says why.
    """
    task = await _load_task(db, task_id)
    role = await _require(db, task, user, TaskAction.PUT)

    machine = TaskStateMachine(db, pipeline.settings)
    result = await machine.trigger_transition(task, data.trigger, user, quality=data.quality)

    if data.grade is not None:
        if role not in STAFF_ROLES:
            raise PermissionDeniedError("Only tutors and convenors can grade tasks.")
        await machine.grade_task(task, data.grade)

    await db.commit()

    return TransitionResponse(
        outcome=result.outcome.value,
        status=task.status,
        role=role.value if role else None,
        propagated=len(result.propagated),
        task=_task_response(task, pipeline),
    )


@router.post(
    "/{task_id}/submission",
    response_model=SubmissionReceiptResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_task(
    task_id: uuid.UUID,
    request: Request,
    user: CurrentUser,
    db: DbSession,
    pipeline: Pipeline,
):
    """
    Upload the files for a task.

    Multipart form: ``file0``..``fileN`` in upload requirement order, plus
    optional ``trigger``, ``contributions`` (JSON list) and ``alignments``
    (JSON list). Evidence is rendered in the background.
    """
    task = await _load_task(db, task_id)
    await _require(db, task, user, TaskAction.MAKE_SUBMISSION)

    form = await request.form()
    trigger = form.get("trigger") or Trigger.READY_TO_MARK.value
    contributions = _parse_json_field(form.get("contributions"), _contributions_adapter, "contributions")
    alignments = _parse_json_field(form.get("alignments"), _alignments_adapter, "alignments")

    workdir = Path(tempfile.mkdtemp(prefix="taskflow-upload-"))
    try:
        files = await _incoming_files(form, task, workdir)
        receipt = await pipeline.accept_submission(
            db,
            task,
            user,
            files,
            contributions=contributions,
            trigger=trigger,
            alignments=alignments,
        )
        await db.commit()
    finally:
        await form.close()
        shutil.rmtree(workdir, ignore_errors=True)

    pipeline.schedule_processing(task.id, user.id)

    return SubmissionReceiptResponse(
        task_id=task.id,
        status=task.status,
        outcome=receipt.transition.outcome.value,
        group_submission_id=receipt.group_submission_id,
        files=receipt.files,
    )


@router.post("/{task_id}/evidence/rebuild", status_code=status.HTTP_202_ACCEPTED)
async def rebuild_evidence(
    task_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
    pipeline: Pipeline,
):
    """Re-render a task's evidence from its archived submission (staff only)."""
    task = await _load_task(db, task_id)
    role = await _require(db, task, user, TaskAction.GET_SUBMISSION)
    if role not in STAFF_ROLES:
        raise PermissionDeniedError("Only tutors and convenors can rebuild evidence.")

    if not await pipeline.move_done_to_new(db, task):
        raise HTTPException(status_code=404, detail="No archived submission for this task")

    pipeline.schedule_processing(task.id, user.id)
    return {"task_id": str(task.id), "queued": True}


@router.get("/{task_id}/submissions", response_model=list[TaskSubmissionResponse])
async def list_task_submissions(
    task_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
):
    """Submission attempts and their assessments, oldest first."""
    task = await _load_task(db, task_id)
    await _require(db, task, user, TaskAction.GET_SUBMISSION)
    submissions = await SubmissionLedger(db).submissions_for(task.id)
    return [TaskSubmissionResponse.model_validate(s) for s in submissions]


@router.get("/{task_id}/engagements", response_model=list[EngagementResponse])
async def list_task_engagements(
    task_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
):
    """Status change history, oldest first."""
    task = await _load_task(db, task_id)
    await _require(db, task, user, TaskAction.GET)
    engagements = await SubmissionLedger(db).engagements_for(task.id)
    return [EngagementResponse.model_validate(e) for e in engagements]
