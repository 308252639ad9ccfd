"""Integration tests for accepting, staging and rendering submissions."""

import asyncio
import uuid
import zipfile

import pytest
from sqlalchemy import select

from conftest import (
    AlwaysFailingRenderer,
    BlockingRenderer,
    FailingOnceRenderer,
    HangsOnceRenderer,
    SlowRenderer,
    incoming,
    reload,
    write_code,
    write_pdf,
)
from taskflow.engines.submission.pipeline import RenderOutcome
from taskflow.errors import ConflictError, MissingFileError, RenderError, ValidationError
from taskflow.kernel.ledger.ledger_service import SubmissionLedger
from taskflow.kernel.models import LearningOutcomeTaskLink, Task, TaskStatus, UploadType
from taskflow.orchestration.state_machine import TaskStateMachine
from taskflow.orchestration.triggers import TransitionOutcome
from taskflow.schemas.submission import AlignmentInput


async def submit(pipeline, session, task, actor, files, **kwargs):
    receipt = await pipeline.accept_submission(session, task, actor, files, **kwargs)
    await session.commit()
    return receipt


class TestAcceptSubmission:
    @pytest.mark.asyncio
    async def test_upload_is_queued(self, db_session, pipeline, cohort, document_and_code):
        receipt = await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        assert receipt.transition.outcome == TransitionOutcome.APPLIED
        assert receipt.staging_key == str(cohort.task.id)
        assert receipt.files == ["000-document.pdf", "001-code.py"]

        area = pipeline.area_for(cohort.task)
        assert sorted(p.name for p in area.new_dir.iterdir()) == receipt.files
        assert cohort.task.status == TaskStatus.READY_TO_MARK.value
        assert cohort.task.file_uploaded_at is not None

    @pytest.mark.asyncio
    async def test_oversized_upload_leaves_nothing_behind(self, db_session, pipeline, cohort, upload_dir):
        big = upload_dir / "report.pdf"
        big.write_bytes(b"%PDF-1.4\n" + b"0" * 6_000_000)
        files = [
            incoming(big, "Report", UploadType.DOCUMENT, 0),
            incoming(write_code(upload_dir / "main.py"), "Main program", UploadType.CODE, 1),
        ]

        with pytest.raises(ValidationError) as exc_info:
            await pipeline.accept_submission(db_session, cohort.task, cohort.student, files)

        assert "exceeds the 5MB file limit" in exc_info.value.message
        assert not pipeline.area_for(cohort.task).new_dir.exists()
        assert cohort.task.status == TaskStatus.NOT_STARTED.value
        assert await SubmissionLedger(db_session).engagements_for(cohort.task.id) == []

    @pytest.mark.asyncio
    async def test_actor_without_role_rejected(self, db_session, pipeline, cohort, document_and_code):
        with pytest.raises(ValidationError) as exc_info:
            await pipeline.accept_submission(db_session, cohort.task, cohort.outsider, document_and_code)

        assert exc_info.value.message == "You do not have permission to submit this task."
        assert not pipeline.area_for(cohort.task).new_dir.exists()

    @pytest.mark.asyncio
    async def test_closed_task_keeps_its_status(self, db_session, settings, pipeline, cohort, document_and_code):
        await TaskStateMachine(db_session, settings).trigger_transition(cohort.task, "complete", cohort.tutor)

        receipt = await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        assert receipt.transition.outcome == TransitionOutcome.IGNORED
        assert cohort.task.status == TaskStatus.COMPLETE.value
        assert pipeline.area_for(cohort.task).new_dir.is_dir()

    @pytest.mark.asyncio
    async def test_alignments_replaced(self, db_session, pipeline, cohort, document_and_code):
        first_outcome, second_outcome = uuid.uuid4(), uuid.uuid4()

        await submit(
            pipeline,
            db_session,
            cohort.task,
            cohort.student,
            document_and_code,
            alignments=[
                AlignmentInput(outcome_id=first_outcome, rating=3),
                AlignmentInput(outcome_id=first_outcome, rating=5, rationale="Covered twice"),
                AlignmentInput(outcome_id=second_outcome, rating=2),
            ],
        )

        async def links():
            result = await db_session.execute(
                select(LearningOutcomeTaskLink).where(LearningOutcomeTaskLink.task_id == cohort.task.id)
            )
            return {link.learning_outcome_id: link for link in result.scalars().all()}

        current = await links()
        assert set(current) == {first_outcome, second_outcome}
        assert current[first_outcome].rating == 5
        assert current[first_outcome].description == "Covered twice"

        await submit(
            pipeline,
            db_session,
            cohort.task,
            cohort.student,
            document_and_code,
            alignments=[AlignmentInput(outcome_id=second_outcome, rating=4)],
        )

        current = await links()
        assert set(current) == {second_outcome}
        assert current[second_outcome].rating == 4


class TestProcessSubmission:
    @pytest.mark.asyncio
    async def test_renders_evidence(self, db_session, pipeline, renderer, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        outcome = await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert outcome == RenderOutcome.RENDERED
        task = await reload(db_session, Task, cohort.task.id)
        expected = pipeline.evidence_path(task)
        assert expected.name == f"P1.1-{task.id}.pdf"
        assert task.portfolio_evidence == str(expected)
        assert task.has_evidence

        area = pipeline.area_for(task)
        assert not area.new_dir.exists()
        assert not area.in_process_dir.exists()
        with zipfile.ZipFile(area.done_archive) as archive:
            assert sorted(archive.namelist()) == [
                f"{area.key}/",
                f"{area.key}/000-document.pdf",
                f"{area.key}/001-code.py",
            ]

        assert renderer.staged == [["000-document.pdf", "001-code.py"]]
        assert renderer.requests[0].title == "Pass Task 1.1 - Hello World"
        assert renderer.requests[0].subtitle == "Alex Student (P1.1)"
        assert [f.name for f in renderer.requests[0].files] == ["Report", "Main program"]

    @pytest.mark.asyncio
    async def test_non_ascii_code_retried_permissively(self, db_session, pipeline, renderer, cohort, upload_dir):
        files = [
            incoming(write_pdf(upload_dir / "report.pdf"), "Report", UploadType.DOCUMENT, 0),
            incoming(write_code(upload_dir / "main.py", "# café\nprint('olé')\n"), "Main program", UploadType.CODE, 1),
        ]
        await submit(pipeline, db_session, cohort.task, cohort.student, files)

        outcome = await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert outcome == RenderOutcome.RENDERED
        assert len(renderer.requests) == 1
        area = pipeline.area_for(cohort.task)
        assert area.has_archive
        assert not area.in_process_dir.exists()
        task = await reload(db_session, Task, cohort.task.id)
        assert task.has_evidence
        assert task.status == TaskStatus.READY_TO_MARK.value

    @pytest.mark.asyncio
    async def test_missing_file_sends_task_back(self, db_session, pipeline, cohort, upload_dir):
        only_report = [incoming(write_pdf(upload_dir / "report.pdf"), "Report", UploadType.DOCUMENT, 0)]
        await submit(pipeline, db_session, cohort.task, cohort.student, only_report)

        with pytest.raises(MissingFileError) as exc_info:
            await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert exc_info.value.requirement == "Main program"
        task = await reload(db_session, Task, cohort.task.id)
        assert task.status == TaskStatus.FIX_AND_RESUBMIT.value
        assert task.portfolio_evidence is None

    @pytest.mark.asyncio
    async def test_scheduled_processing(self, db_session, pipeline, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        handle = pipeline.schedule_processing(cohort.task.id, cohort.student.id)

        assert await handle == RenderOutcome.RENDERED
        task = await reload(db_session, Task, cohort.task.id)
        assert task.has_evidence

    @pytest.mark.asyncio
    async def test_evidence_rebuilt_from_archive(self, db_session, pipeline, renderer, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)
        await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert await pipeline.move_done_to_new(db_session, cohort.task)
        assert pipeline.area_for(cohort.task).new_dir.is_dir()
        await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert len(renderer.staged) == 2
        assert renderer.staged[1] == renderer.staged[0]


class TestRenderRetry:
    @pytest.fixture
    def renderer(self):
        return FailingOnceRenderer()

    @pytest.mark.asyncio
    async def test_second_attempt_succeeds(self, db_session, pipeline, renderer, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        outcome = await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert outcome == RenderOutcome.RENDERED
        assert renderer.calls == 2
        assert (await reload(db_session, Task, cohort.task.id)).has_evidence


class TestRenderFailure:
    @pytest.fixture
    def renderer(self):
        return AlwaysFailingRenderer()

    @pytest.mark.asyncio
    async def test_task_returned_to_student(self, db_session, pipeline, renderer, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        with pytest.raises(RenderError) as exc_info:
            await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert renderer.calls == 2
        assert exc_info.value.message.startswith("Failed to convert your submission to PDF.")
        excerpt = exc_info.value.log_excerpt.splitlines()
        assert len(excerpt) == 40
        assert excerpt[-1] == "log line 99"
        assert exc_info.value.to_payload()["log"] == exc_info.value.log_excerpt

        task = await reload(db_session, Task, cohort.task.id)
        assert task.status == TaskStatus.FIX_AND_RESUBMIT.value
        assert task.portfolio_evidence is None
        submissions = await SubmissionLedger(db_session).submissions_for(task.id)
        assert submissions[-1].assessor_id == cohort.tutor.id

    @pytest.mark.asyncio
    async def test_pending_failures_reported(self, db_session, pipeline, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        assert await pipeline.process_pending() == {str(cohort.task.id): "failed"}


class TestRenderTimeout:
    @pytest.fixture
    def renderer(self):
        return SlowRenderer(delay=0.5)

    @pytest.mark.asyncio
    async def test_slow_render_times_out(self, db_session, pipeline, renderer, cohort, document_and_code):
        pipeline.settings.render_timeout_seconds = 0.1
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        with pytest.raises(RenderError) as exc_info:
            await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert exc_info.value.log_excerpt == "Rendering did not finish within 0.1 seconds"
        task = await reload(db_session, Task, cohort.task.id)
        assert task.status == TaskStatus.FIX_AND_RESUBMIT.value


async def wait_for_cleanup(area, seconds: float = 5.0) -> bool:
    for _ in range(int(seconds / 0.05)):
        if not area.in_process_dir.exists():
            return True
        await asyncio.sleep(0.05)
    return False


class TestRenderTimeoutRetry:
    @pytest.fixture
    def renderer(self):
        return HangsOnceRenderer(first_delay=0.6, later_delay=0.1)

    @pytest.mark.asyncio
    async def test_permissive_retry_after_timeout(self, db_session, pipeline, renderer, cohort, document_and_code):
        pipeline.settings.render_timeout_seconds = 0.4
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        outcome = await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert outcome == RenderOutcome.RENDERED
        assert renderer.calls == 2
        task = await reload(db_session, Task, cohort.task.id)
        assert task.status == TaskStatus.READY_TO_MARK.value
        assert task.has_evidence

        # The abandoned attempt keeps its own directory and removes it when done
        assert await wait_for_cleanup(pipeline.area_for(cohort.task))
        assert len(renderer.requests) == 2
        assert renderer.requests[0].base_dir != renderer.requests[1].base_dir
        assert renderer.staged[0] == renderer.staged[1]


class TestRenderTimeoutSingleWorker:
    @pytest.fixture
    def settings(self, settings):
        settings.render_workers = 1
        settings.render_timeout_seconds = 0.4
        return settings

    @pytest.fixture
    def renderer(self):
        return HangsOnceRenderer(first_delay=1.0)

    @pytest.mark.asyncio
    async def test_retry_waits_for_the_worker(self, db_session, pipeline, renderer, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)

        outcome = await pipeline.process_submission(db_session, cohort.task, cohort.student)

        assert outcome == RenderOutcome.RENDERED
        assert renderer.calls == 2
        assert (await reload(db_session, Task, cohort.task.id)).has_evidence
        assert await wait_for_cleanup(pipeline.area_for(cohort.task))


class TestProcessPending:
    @pytest.mark.asyncio
    async def test_every_queued_submission_processed(self, db_session, pipeline, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)
        (pipeline.store.root / "new" / "not-a-task").mkdir()

        results = await pipeline.process_pending()

        assert results == {str(cohort.task.id): "rendered", "not-a-task": "orphaned"}
        assert (await reload(db_session, Task, cohort.task.id)).has_evidence


class TestGroupSubmission:
    @pytest.mark.asyncio
    async def test_evidence_shared_by_members(self, db_session, pipeline, team, document_and_code):
        receipt = await submit(pipeline, db_session, team.tasks[0], team.members[0], document_and_code)

        assert receipt.group_submission_id is not None
        assert receipt.staging_key == str(receipt.group_submission_id)
        assert len(receipt.transition.propagated) == 2

        await pipeline.process_submission(db_session, team.tasks[0], team.members[0])

        paths = set()
        for task in team.tasks:
            task = await reload(db_session, Task, task.id)
            assert task.status == TaskStatus.READY_TO_MARK.value
            assert task.has_evidence
            paths.add(task.portfolio_evidence)
        assert len(paths) == 1
        assert paths.pop().endswith(f"T5.1-{receipt.group_submission_id}.pdf")

    @pytest.mark.asyncio
    async def test_second_member_blocked_while_processing(self, db_session, pipeline, team, document_and_code):
        await submit(pipeline, db_session, team.tasks[0], team.members[0], document_and_code)

        with pytest.raises(ConflictError) as exc_info:
            await pipeline.accept_submission(db_session, team.tasks[1], team.members[1], document_and_code)

        assert exc_info.value.submitter_name == "Morgan Member"
        assert exc_info.value.message.startswith("Morgan Member has just submitted this task.")

    @pytest.mark.asyncio
    async def test_submitter_may_upload_again(self, db_session, pipeline, team, document_and_code):
        first = await submit(pipeline, db_session, team.tasks[0], team.members[0], document_and_code)
        second = await submit(pipeline, db_session, team.tasks[0], team.members[0], document_and_code)

        assert second.group_submission_id == first.group_submission_id
        assert (await reload(db_session, Task, team.tasks[0].id)).group_submission.generation == 2


class TestSupersededRender:
    @pytest.fixture
    def renderer(self):
        return BlockingRenderer()

    @pytest.mark.asyncio
    async def test_newer_generation_discards_render(
        self, db_session, session_maker, settings, pipeline, renderer, team, document_and_code
    ):
        await submit(pipeline, db_session, team.tasks[0], team.members[0], document_and_code)
        rendering = asyncio.create_task(pipeline.render(db_session, team.tasks[0], team.members[0]))

        assert await asyncio.to_thread(renderer.started.wait, 10)
        async with session_maker() as other:
            member_task = await other.get(Task, team.tasks[1].id)
            await TaskStateMachine(other, settings).groups.create_submission(member_task, "Resubmitted")
            await other.commit()
        renderer.release.set()

        assert await rendering == RenderOutcome.SUPERSEDED
        assert not pipeline.evidence_path(team.tasks[0]).exists()
        for task in team.tasks:
            assert (await reload(db_session, Task, task.id)).portfolio_evidence is None


class TestRenderInFlight:
    @pytest.fixture
    def renderer(self):
        return BlockingRenderer()

    @pytest.mark.asyncio
    async def test_rebuild_waits_for_running_render(self, db_session, pipeline, renderer, cohort, document_and_code):
        await submit(pipeline, db_session, cohort.task, cohort.student, document_and_code)
        rendering = asyncio.create_task(pipeline.process_submission(db_session, cohort.task, cohort.student))
        assert await asyncio.to_thread(renderer.started.wait, 10)

        rebuild = asyncio.create_task(pipeline.move_done_to_new(db_session, cohort.task))
        await asyncio.sleep(0.05)

        area = pipeline.area_for(cohort.task)
        assert not rebuild.done()
        assert not area.new_dir.exists()

        renderer.release.set()
        assert await rendering == RenderOutcome.RENDERED
        assert await rebuild
        assert area.new_dir.is_dir()

    @pytest.mark.asyncio
    async def test_member_upload_rejected_during_render(
        self, db_session, session_maker, pipeline, renderer, team, document_and_code
    ):
        await submit(pipeline, db_session, team.tasks[0], team.members[0], document_and_code)
        rendering = asyncio.create_task(pipeline.process_submission(db_session, team.tasks[0], team.members[0]))
        assert await asyncio.to_thread(renderer.started.wait, 10)

        try:
            async with session_maker() as other:
                member_task = await other.get(Task, team.tasks[1].id)
                with pytest.raises(ConflictError) as exc_info:
                    await pipeline.accept_submission(other, member_task, team.members[1], document_and_code)
        finally:
            renderer.release.set()

        assert exc_info.value.submitter_name == "Morgan Member"
        assert await rendering == RenderOutcome.RENDERED
        assert pipeline.area_for(team.tasks[0]).is_processing is False
