"""
Submission pipeline: from uploaded files to a rendered evidence PDF.

accept_submission validates an upload, moves the task (and its group)
to the requested status and queues the files in the ``new`` phase.
process_submission then stages them, renders the evidence off the event
loop, and publishes the evidence path on every task that shares it.
"""

import asyncio
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Union

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow.config import Settings, get_settings
from taskflow.engines.rendering.renderer import (
    EvidenceRenderer,
    PdfEvidenceRenderer,
    RenderFailure,
    RenderRequest,
    ResolvedFile,
    compress_pdf,
)
from taskflow.engines.staging.encoding import CodeEncodingError, EncodingMode, normalize_code_file
from taskflow.engines.staging.store import StagingArea, StagingStore, source_filename
from taskflow.engines.submission.locks import KeyedLocks, task_lock_key
from taskflow.engines.submission.validation import check_descriptor, validate_incoming
from taskflow.errors import (
    ConflictError,
    MissingFileError,
    RenderError,
    StagingError,
    TaskflowError,
    ValidationError,
)
from taskflow.kernel.models.alignment import LearningOutcomeTaskLink
from taskflow.kernel.models.base import utcnow
from taskflow.kernel.models.group_submission import GroupSubmission
from taskflow.kernel.models.project import Group
from taskflow.kernel.models.task import Task, UploadType
from taskflow.kernel.models.user import User
from taskflow.kernel.permissions.task_roles import find_group, role_for
from taskflow.logging_config import correlation_id_var, get_logger
from taskflow.orchestration.group_coordinator import GroupSubmissionCoordinator
from taskflow.orchestration.state_machine import TaskStateMachine
from taskflow.orchestration.triggers import (
    PropagationContext,
    TransitionOutcome,
    TransitionResult,
    Trigger,
    parse_trigger,
)
from taskflow.schemas.submission import (
    AlignmentInput,
    ContributionInput,
    IncomingFile,
    UploadRequirement,
)

logger = get_logger(__name__)

RENDER_FAILED_MESSAGE = (
    "Failed to convert your submission to PDF. Check code files submitted for invalid "
    "characters, that documents are valid pdfs, and that images are valid."
)

LOG_PATH_PATTERN = re.compile(r"/\S*\.log")
LOG_EXCERPT_LINES = 40

# Restrictive first, then one permissive retry
ENCODING_ATTEMPTS = (EncodingMode.RESTRICTIVE, EncodingMode.PERMISSIVE)


class RenderOutcome(str, Enum):
    RENDERED = "rendered"
    # A newer group submission arrived while rendering; result discarded
    SUPERSEDED = "superseded"


@dataclass
class SubmissionReceipt:
    """What accept_submission did."""
    task_id: uuid.UUID
    staging_key: str
    transition: TransitionResult
    group_submission_id: Optional[uuid.UUID] = None
    files: List[str] = field(default_factory=list)


def _output_file(in_dir: Path, index: int, upload_type: str) -> Optional[Path]:
    """
    Locate the staged file for an index and type.

    Legacy ``NNN.<type>.<ext>`` names are renamed to ``NNN-<type>.<ext>``.
    """
    prefix = f"{index:03d}"
    for legacy in sorted(in_dir.glob(f"{prefix}.{upload_type}.*")):
        legacy.rename(in_dir / f"{prefix}-{upload_type}{legacy.suffix}")

    candidates = sorted(in_dir.glob(f"{prefix}-{upload_type}.*"))
    if candidates:
        return candidates[0]
    bare = in_dir / f"{prefix}-{upload_type}"
    return bare if bare.is_file() else None


def _log_excerpt(failure: Optional[BaseException], timeout: float) -> Optional[str]:
    if failure is None:
        return None
    if isinstance(failure, asyncio.TimeoutError):
        return f"Rendering did not finish within {timeout:g} seconds"

    text = None
    if isinstance(failure, RenderFailure) and failure.log_text:
        text = failure.log_text
    else:
        match = LOG_PATH_PATTERN.search(str(failure))
        if match and Path(match.group(0)).is_file():
            text = Path(match.group(0)).read_text(encoding="utf-8", errors="replace")
    if not text:
        return str(failure) or None
    return "\n".join(text.splitlines()[-LOG_EXCERPT_LINES:])


class SubmissionPipeline:
    """
    Staging, rendering and acceptance of submitted work.

    One instance per process: it owns the render worker pool and the
    per-task locks that serialise staging for a task or group.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        renderer: Optional[EvidenceRenderer] = None,
        store: Optional[StagingStore] = None,
        session_maker: Optional[async_sessionmaker] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.settings = settings or get_settings()
        self.renderer = renderer or PdfEvidenceRenderer()
        self.store = store or StagingStore(self.settings.staging_root)
        self.locks = locks or KeyedLocks()
        self._session_maker = session_maker
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.render_workers,
            thread_name_prefix="evidence-render",
        )
        self._background: Set[asyncio.Task] = set()

    @property
    def session_maker(self) -> async_sessionmaker:
        if self._session_maker is None:
            from taskflow.database import async_session_maker

            self._session_maker = async_session_maker
        return self._session_maker

    # Staging ---------------------------------------------------------------

    @staticmethod
    def staging_key(task: Task) -> str:
        """Group work is staged once, under the group submission's id."""
        if task.group_submission_id is not None:
            return str(task.group_submission_id)
        return str(task.id)

    def area_for(self, task: Task) -> StagingArea:
        return self.store.area_for_key(self.staging_key(task))

    def evidence_path(self, task: Task) -> Optional[Path]:
        """pdf/<abbrev>-<task or group submission id>.pdf"""
        abbreviation = task.definition.abbreviation
        if task.is_group_task:
            if task.group_submission_id is None:
                return None
            return self.store.evidence_path(abbreviation, str(task.group_submission_id))
        return self.store.evidence_path(abbreviation, str(task.id))

    def stage_for_processing(self, area: StagingArea, destination: Optional[Path] = None) -> Path:
        return area.stage(destination)

    def archive_source(self, area: StagingArea) -> Path:
        return area.archive_new()

    async def move_done_to_new(self, session: AsyncSession, task: Task) -> bool:
        """Queue an archived submission so its evidence is rebuilt."""
        key = await self._lock_key(session, task)
        async with self.locks.hold(key):
            return await asyncio.to_thread(self.area_for(task).requeue)

    def resolve_required_files(
        self,
        area: StagingArea,
        requirements: Sequence[Union[UploadRequirement, dict]],
        permissive: bool = False,
        in_dir: Optional[Path] = None,
    ) -> List[ResolvedFile]:
        """
        Match upload requirements, in order, to the staged files in
        ``in_dir`` (the area's ``in_process`` directory by default).

        A requirement whose file is not at the expected index is looked
        for one index further on, to step over a header file.

        Raises:
            MissingFileError: a required file is absent
            CodeEncodingError: restrictive mode and a code file is not ASCII
        """
        mode = EncodingMode.PERMISSIVE if permissive else EncodingMode.RESTRICTIVE
        in_dir = Path(in_dir) if in_dir is not None else area.in_process_dir
        resolved = []
        index = 0
        for raw in requirements:
            requirement = UploadRequirement.model_validate(raw)
            upload_type = requirement.type.value

            path = _output_file(in_dir, index, upload_type)
            if path is None:
                index += 1
                path = _output_file(in_dir, index, upload_type)
            if path is None:
                logger.error("Missing file %s (%s) in %s", requirement.name, upload_type, in_dir)
                raise MissingFileError(requirement.name)

            if requirement.type == UploadType.CODE:
                normalize_code_file(path, mode)

            resolved.append(ResolvedFile(path=path, type=requirement.type, name=requirement.name))
            index += 1
        return resolved

    def _render_attempt(
        self,
        area: StagingArea,
        workdir: Path,
        requirements: Sequence[dict],
        mode: EncodingMode,
        title: str,
        subtitle: str,
    ) -> bytes:
        """
        One blocking attempt: stage, resolve, render. Runs in the worker pool.

        The attempt only ever touches its own ``workdir``, so an attempt
        abandoned after a timeout cannot disturb the retry.
        """
        try:
            self.stage_for_processing(area, workdir)
            files = self.resolve_required_files(
                area,
                requirements,
                permissive=mode == EncodingMode.PERMISSIVE,
                in_dir=workdir,
            )
            request = RenderRequest(
                base_dir=workdir,
                files=files,
                institution_name=self.settings.institution_name,
                title=title,
                subtitle=subtitle,
            )
            data = self.renderer.render(request)
            try:
                return compress_pdf(data)
            except RuntimeError as exc:
                raise RenderFailure(f"Renderer produced an unreadable document: {exc}") from exc
        finally:
            area.discard_attempt(workdir)

    async def _run_attempt(
        self,
        area: StagingArea,
        requirements: Sequence[dict],
        mode: EncodingMode,
        title: str,
        subtitle: str,
    ) -> bytes:
        """
        Run one attempt in the worker pool, bounded by the render timeout.

        The timeout starts once a worker picks the attempt up, so a retry
        queued behind an abandoned attempt is not charged for the wait.
        """
        loop = asyncio.get_running_loop()
        started = asyncio.Event()
        workdir = area.attempt_dir()

        def attempt() -> bytes:
            loop.call_soon_threadsafe(started.set)
            return self._render_attempt(area, workdir, requirements, mode, title, subtitle)

        future = loop.run_in_executor(self._executor, attempt)
        waiting = loop.create_task(started.wait())
        try:
            await asyncio.wait({future, waiting}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiting.cancel()
        return await asyncio.wait_for(future, timeout=self.settings.render_timeout_seconds)

    # Rendering -------------------------------------------------------------

    async def _evidence_holders(self, session: AsyncSession, task: Task) -> List[Task]:
        if task.group_submission is None:
            return [task]
        coordinator = GroupSubmissionCoordinator(session, TaskStateMachine(session, self.settings))
        members = await coordinator.member_tasks(task.group_submission)
        return members or [task]

    async def render(self, session: AsyncSession, task: Task, actor: Optional[User] = None) -> RenderOutcome:
        """
        Render the task's staged files into its evidence PDF.

        Each encoding attempt runs in the worker pool under the configured
        timeout. After the last failed attempt the task is sent back for
        fixing and RenderError is raised.
        """
        definition = task.definition
        requirements = list(definition.upload_requirements or [])
        area = self.area_for(task)
        group_submission = task.group_submission
        generation = group_submission.generation if group_submission is not None else None

        holders = await self._evidence_holders(session, task)
        for holder in holders:
            holder.portfolio_evidence = None
        # Nothing is held open in the database while the renderer runs
        await session.commit()

        title = definition.name
        subtitle = f"{task.project.student.full_name} ({definition.abbreviation})"
        timeout = self.settings.render_timeout_seconds

        data = None
        failure: Optional[BaseException] = None
        for attempt, mode in enumerate(ENCODING_ATTEMPTS, start=1):
            try:
                data = await self._run_attempt(area, requirements, mode, title, subtitle)
                break
            except (MissingFileError, StagingError) as exc:
                logger.error("Cannot process task %s: %s", task.log_details, exc)
                await self._send_back(session, task, actor)
                raise
            except (RenderFailure, CodeEncodingError, asyncio.TimeoutError) as exc:
                failure = exc
                logger.warning(
                    "Render attempt %d (%s) failed for task %s: %s",
                    attempt,
                    mode.value,
                    task.log_details,
                    str(exc) or type(exc).__name__,
                )

        if data is None:
            logger.error("Failed to create PDF for task %s", task.log_details)
            excerpt = _log_excerpt(failure, timeout)
            await self._send_back(session, task, actor)
            raise RenderError(RENDER_FAILED_MESSAGE, log_excerpt=excerpt)

        if group_submission is not None:
            current = await session.scalar(
                select(GroupSubmission.generation).where(GroupSubmission.id == group_submission.id)
            )
            if current != generation:
                logger.info(
                    "Discarding render of group submission %s: generation %s superseded by %s",
                    group_submission.id,
                    generation,
                    current,
                )
                return RenderOutcome.SUPERSEDED

        path = self.evidence_path(task)
        self.store.write_evidence(path, data)
        for holder in holders:
            holder.portfolio_evidence = str(path)
        await session.commit()

        logger.info("Evidence for task %s written to %s", task.log_details, path)
        return RenderOutcome.RENDERED

    async def _send_back(self, session: AsyncSession, task: Task, actor: Optional[User]) -> None:
        """Return the task to fix_and_resubmit on behalf of its main tutor."""
        assessor = None
        if task.project.main_tutor_id is not None:
            assessor = await session.get(User, task.project.main_tutor_id)
        if assessor is None:
            assessor = actor

        machine = TaskStateMachine(session, self.settings)
        result = await machine.trigger_transition(task, Trigger.FIX_AND_RESUBMIT, assessor)
        if not result.applied:
            logger.warning(
                "Could not return task %s to fix_and_resubmit: %s",
                task.log_details,
                result.outcome.value,
            )
        await session.commit()

    async def process_submission(
        self,
        session: AsyncSession,
        task: Task,
        actor: Optional[User] = None,
    ) -> RenderOutcome:
        """Render a queued submission while holding the task's staging lock."""
        key = await self._lock_key(session, task)
        async with self.locks.hold(key):
            return await self.render(session, task, actor)

    def schedule_processing(
        self,
        task_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> "asyncio.Task[Optional[RenderOutcome]]":
        """
        Process a submission in the background, in its own session.

        The returned handle can be awaited; failures are also logged.
        """

        async def run() -> Optional[RenderOutcome]:
            correlation_id_var.set(f"task:{task_id}")
            async with self.session_maker() as session:
                task = await session.get(Task, task_id)
                if task is None:
                    logger.warning("Task %s vanished before processing", task_id)
                    return None
                actor = await session.get(User, actor_id) if actor_id is not None else None
                return await self.process_submission(session, task, actor)

        handle = asyncio.get_running_loop().create_task(run())
        self._background.add(handle)
        handle.add_done_callback(self._finished)
        return handle

    def _finished(self, handle: asyncio.Task) -> None:
        self._background.discard(handle)
        if handle.cancelled():
            return
        exc = handle.exception()
        if isinstance(exc, TaskflowError):
            logger.error("Background processing failed: %s", exc.message)
        elif exc is not None:
            logger.error("Background processing crashed", exc_info=exc)

    async def _task_for_key(self, session: AsyncSession, key: str) -> Optional[Task]:
        try:
            ident = uuid.UUID(key)
        except ValueError:
            return None
        group_submission = await session.get(GroupSubmission, ident)
        if group_submission is not None:
            if group_submission.submitter_task_id is None:
                return None
            return await session.get(Task, group_submission.submitter_task_id)
        return await session.get(Task, ident)

    async def process_pending(self) -> Dict[str, str]:
        """
        Render every submission waiting in ``new``.

        Returns a key -> outcome map; failures are reported, not raised.
        """
        results: Dict[str, str] = {}
        for key in self.store.pending_keys():
            correlation_id_var.set(f"staging:{key}")
            async with self.session_maker() as session:
                task = await self._task_for_key(session, key)
                if task is None:
                    logger.warning("No task found for staged submission %s", key)
                    results[key] = "orphaned"
                    continue
                try:
                    outcome = await self.process_submission(session, task)
                    results[key] = outcome.value
                except TaskflowError as exc:
                    logger.error("Processing %s failed: %s", key, exc.message)
                    results[key] = "failed"
        return results

    async def drain(self) -> None:
        """Wait until all scheduled background processing has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Wait for background processing, then stop the worker pool."""
        await self.drain()
        self._executor.shutdown(wait=True)

    # Acceptance ------------------------------------------------------------

    async def _group_for(self, session: AsyncSession, task: Task) -> Optional[Group]:
        group = await find_group(session, task)
        if group is None and task.group_submission is not None:
            group = await session.get(Group, task.group_submission.group_id)
        return group

    async def _lock_key(self, session: AsyncSession, task: Task) -> str:
        if not task.is_group_task:
            return task_lock_key(task)
        group = await self._group_for(session, task)
        return task_lock_key(task, group.id if group is not None else None)

    async def _check_conflict(
        self,
        coordinator: GroupSubmissionCoordinator,
        task: Task,
        lock_key: Optional[str] = None,
    ) -> None:
        group_submission = task.group_submission
        if group_submission is None or group_submission.submitter_task_id in (None, task.id):
            return
        busy = await coordinator.processing_conflict(task, self.store)
        if not busy and lock_key is not None:
            busy = self.locks.locked(lock_key)
        if busy:
            name = await coordinator.conflicting_submitter_name(task) or "Another team member"
            logger.info("Rejecting upload for task %s: %s is submitting", task.id, name)
            raise ConflictError(name)

    async def _replace_alignments(
        self,
        session: AsyncSession,
        task: Task,
        alignments: Sequence[AlignmentInput],
    ) -> None:
        await session.execute(
            delete(LearningOutcomeTaskLink).where(LearningOutcomeTaskLink.task_id == task.id)
        )
        latest: Dict[uuid.UUID, AlignmentInput] = {}
        for alignment in alignments:
            latest[alignment.outcome_id] = alignment
        for alignment in latest.values():
            session.add(
                LearningOutcomeTaskLink(
                    task_definition_id=task.task_definition_id,
                    task_id=task.id,
                    learning_outcome_id=alignment.outcome_id,
                    rating=alignment.rating,
                    description=alignment.rationale,
                )
            )
        await session.flush()

    async def _transition_for_upload(
        self,
        machine: TaskStateMachine,
        task: Task,
        actor: User,
        trigger: Trigger,
        contributions: Optional[Sequence[ContributionInput]],
        notes: Optional[str],
    ) -> TransitionResult:
        now = utcnow()

        if not task.is_group_task:
            return await self._upload_transition(machine, task, actor, trigger, now)

        group_submission = await machine.groups.create_submission(
            task,
            notes or f"{actor.full_name} has submitted work",
            contributions,
        )
        context = PropagationContext(source_task_id=task.id, group_submission_id=group_submission.id)

        result = None
        replicas = []
        for member in await machine.groups.member_tasks(group_submission):
            member_result = await self._upload_transition(
                machine, member, actor, trigger, now, propagation=context
            )
            if member.id == task.id:
                result = member_result
            else:
                replicas.append(member_result)

        if result is None:
            result = await self._upload_transition(machine, task, actor, trigger, now, propagation=context)
        result.propagated = replicas
        return result

    async def _upload_transition(
        self,
        machine: TaskStateMachine,
        task: Task,
        actor: User,
        trigger: Trigger,
        now: datetime,
        propagation: Optional[PropagationContext] = None,
    ) -> TransitionResult:
        task.file_uploaded_at = now
        task.submission_date = now
        # Closed tasks keep their status; the new files only refresh evidence
        if task.is_closed:
            return TransitionResult(TransitionOutcome.IGNORED, trigger, task.task_status)
        return await machine.trigger_transition(task, trigger, actor, propagation=propagation)

    async def accept_submission(
        self,
        session: AsyncSession,
        task: Task,
        actor: User,
        files: Sequence[IncomingFile],
        contributions: Optional[Sequence[ContributionInput]] = None,
        trigger: Union[str, Trigger] = Trigger.READY_TO_MARK,
        alignments: Optional[Sequence[AlignmentInput]] = None,
        notes: Optional[str] = None,
    ) -> SubmissionReceipt:
        """
        Accept uploaded files for a task and queue them for rendering.

        Raises:
            ValidationError: bad descriptor, size, type, group or permission
            ConflictError: another member's group upload is being processed
        """
        trigger = parse_trigger(trigger)
        for file in files:
            check_descriptor(file)

        if await role_for(session, task, actor) is None:
            raise ValidationError("You do not have permission to submit this task.")

        machine = TaskStateMachine(session, self.settings)
        group = None
        if task.is_group_task:
            group = await machine.groups.group_for(task)
            if group is None:
                raise ValidationError("You must be in a group to submit this task.")

        lock_key = task_lock_key(task, group.id if group is not None else None)
        await self._check_conflict(machine.groups, task, lock_key)

        validate_incoming(files, self.settings.max_upload_bytes)

        async with self.locks.hold(lock_key):
            await self._check_conflict(machine.groups, task)

            if alignments is not None:
                await self._replace_alignments(session, task, alignments)

            transition = await self._transition_for_upload(
                machine, task, actor, trigger, contributions, notes
            )

            for holder in await self._evidence_holders(session, task):
                holder.portfolio_evidence = None
            await session.flush()

            staged = [
                (
                    Path(file.temporary_path),
                    source_filename(index, UploadType(file.declared_type).value, Path(file.stored_filename).suffix),
                )
                for index, file in enumerate(files)
            ]
            area = self.area_for(task)
            await asyncio.to_thread(area.receive, staged)

        logger.info(
            "Submission accepted for task %s; status is now %s",
            task.log_details,
            task.status,
        )
        return SubmissionReceipt(
            task_id=task.id,
            staging_key=area.key,
            transition=transition,
            group_submission_id=task.group_submission_id,
            files=[name for _, name in staged],
        )
