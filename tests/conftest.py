"""
Pytest fixtures for taskflow tests.

Every test gets its own file-based SQLite database and staging root under
tmp_path, so background processing (which opens its own sessions) sees
the same data as the test.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncGenerator, List, Optional

import fitz
import PIL.Image
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow.config import Settings
from taskflow.database import build_engine, build_session_maker
from taskflow.engines.rendering.renderer import RenderFailure, RenderRequest
from taskflow.engines.submission.pipeline import SubmissionPipeline
from taskflow.kernel.identity.jwt import JWTManager
from taskflow.kernel.models import (
    Base,
    Group,
    GroupMembership,
    GroupSet,
    Project,
    Task,
    TaskDefinition,
    TaskStatus,
    Unit,
    UnitRole,
    UnitRoleKind,
    UploadType,
    User,
)
from taskflow.schemas.submission import IncomingFile


DOCUMENT_AND_CODE = [
    {"name": "Report", "type": "document"},
    {"name": "Main program", "type": "code"},
]


# Renderers --------------------------------------------------------------

def minimal_pdf(text: str = "evidence") -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


class RecordingRenderer:
    """Returns a one-page PDF and remembers what it was asked to render."""

    def __init__(self):
        self.requests: List[RenderRequest] = []
        self.staged: List[List[str]] = []

    def render(self, request: RenderRequest) -> bytes:
        self.requests.append(request)
        self.staged.append(sorted(p.name for p in request.base_dir.iterdir()))
        return minimal_pdf(request.title)


class FailingOnceRenderer(RecordingRenderer):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def render(self, request: RenderRequest) -> bytes:
        self.calls += 1
        if self.calls == 1:
            raise RenderFailure("first attempt failed", log_text="! Undefined control sequence.")
        return super().render(request)


class AlwaysFailingRenderer:
    def __init__(self):
        self.calls = 0

    def render(self, request: RenderRequest) -> bytes:
        self.calls += 1
        lines = [f"log line {i}" for i in range(100)]
        raise RenderFailure("renderer crashed", log_text="\n".join(lines))


class BlockingRenderer(RecordingRenderer):
    """Blocks in the worker thread until the test releases it."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def render(self, request: RenderRequest) -> bytes:
        self.started.set()
        if not self.release.wait(timeout=10):
            raise RenderFailure("never released")
        return super().render(request)


class SlowRenderer:
    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0

    def render(self, request: RenderRequest) -> bytes:
        self.calls += 1
        time.sleep(self.delay)
        return minimal_pdf()


class HangsOnceRenderer(RecordingRenderer):
    """Stalls for ``first_delay`` on the first call and ``later_delay`` after."""

    def __init__(self, first_delay: float, later_delay: float = 0.0):
        super().__init__()
        self.first_delay = first_delay
        self.later_delay = later_delay
        self.calls = 0
        self._count = threading.Lock()

    def render(self, request: RenderRequest) -> bytes:
        with self._count:
            self.calls += 1
            first = self.calls == 1
        time.sleep(self.first_delay if first else self.later_delay)
        return super().render(request)


# Files ------------------------------------------------------------------

def write_pdf(path: Path, text: str = "Hello") -> Path:
    path.write_bytes(minimal_pdf(text))
    return path


def write_png(path: Path, size=(40, 30), color="red") -> Path:
    PIL.Image.new("RGB", size, color).save(path, format="PNG")
    return path


def write_code(path: Path, text: str = "print('hello')\n", encoding: str = "utf-8") -> Path:
    path.write_bytes(text.encode(encoding))
    return path


def incoming(path: Optional[Path], name: str, upload_type: UploadType, index: int = 0) -> IncomingFile:
    return IncomingFile(
        identifier=f"file{index}",
        display_name=name,
        stored_filename=path.name if path is not None else None,
        declared_type=upload_type,
        temporary_path=path,
    )


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def document_and_code(upload_dir: Path) -> List[IncomingFile]:
    """A valid upload for a definition asking for a document and a code file."""
    return [
        incoming(write_pdf(upload_dir / "report.pdf"), "Report", UploadType.DOCUMENT, 0),
        incoming(write_code(upload_dir / "main.py"), "Main program", UploadType.CODE, 1),
    ]


# Database ---------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'taskflow.db'}",
        secret_key="test-secret-key-for-testing-only",
        staging_root=tmp_path / "student_work",
        render_timeout_seconds=10.0,
        render_workers=2,
        institution_name="Test University",
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine(settings: Settings):
    """Create a test database engine."""
    engine = build_engine(settings.database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker:
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest_asyncio.fixture
async def pipeline(settings: Settings, renderer, session_maker) -> AsyncGenerator[SubmissionPipeline, None]:
    pipeline = SubmissionPipeline(settings=settings, renderer=renderer, session_maker=session_maker)
    pipeline.store.ensure_layout()
    yield pipeline
    await pipeline.close()


# Records ----------------------------------------------------------------

async def reload(session: AsyncSession, model, ident):
    """Load a row afresh so its eager relationships are populated."""
    return await session.get(model, ident, populate_existing=True)


async def make_user(session: AsyncSession, username: str, full_name: str) -> User:
    user = User(
        id=uuid.uuid4(),
        username=username,
        email=f"{username}@example.com",
        full_name=full_name,
    )
    session.add(user)
    await session.flush()
    return user


@dataclass
class Cohort:
    """A unit with staff, one enrolled student and an individual task."""

    unit: Unit
    student: User
    tutor: User
    convenor: User
    outsider: User
    project: Project
    definition: TaskDefinition
    task: Task


@pytest_asyncio.fixture
async def cohort(db_session: AsyncSession) -> Cohort:
    unit = Unit(id=uuid.uuid4(), code="COS10009", name="Introduction to Programming")
    db_session.add(unit)

    student = await make_user(db_session, "astudent", "Alex Student")
    tutor = await make_user(db_session, "ttutor", "Taylor Tutor")
    convenor = await make_user(db_session, "cconvenor", "Casey Convenor")
    outsider = await make_user(db_session, "ooutsider", "Oakley Outsider")

    db_session.add_all([
        UnitRole(unit_id=unit.id, user_id=tutor.id, role=UnitRoleKind.TUTOR.value),
        UnitRole(unit_id=unit.id, user_id=convenor.id, role=UnitRoleKind.CONVENOR.value),
        UnitRole(unit_id=unit.id, user_id=student.id, role=UnitRoleKind.STUDENT.value),
    ])

    project = Project(id=uuid.uuid4(), unit_id=unit.id, user_id=student.id, main_tutor_id=tutor.id)
    definition = TaskDefinition(
        id=uuid.uuid4(),
        unit_id=unit.id,
        name="Pass Task 1.1 - Hello World",
        abbreviation="P1.1",
        upload_requirements=DOCUMENT_AND_CODE,
        max_quality_pts=5,
    )
    db_session.add_all([project, definition])
    await db_session.flush()

    task = Task(
        id=uuid.uuid4(),
        task_definition_id=definition.id,
        project_id=project.id,
        status=TaskStatus.NOT_STARTED.value,
    )
    db_session.add(task)
    await db_session.commit()

    task = await reload(db_session, Task, task.id)
    return Cohort(
        unit=unit,
        student=student,
        tutor=tutor,
        convenor=convenor,
        outsider=outsider,
        project=project,
        definition=definition,
        task=task,
    )


@dataclass
class Team:
    """Three students sharing a group task."""

    group: Group
    definition: TaskDefinition
    members: List[User]
    projects: List[Project]
    tasks: List[Task]


async def build_team(
    session: AsyncSession,
    cohort: Cohort,
    graded: bool = False,
    restrict: bool = False,
) -> Team:
    group_set = GroupSet(id=uuid.uuid4(), unit_id=cohort.unit.id, name="Project teams")
    session.add(group_set)
    await session.flush()

    group = Group(id=uuid.uuid4(), group_set_id=group_set.id, name="Team Kookaburra")
    definition = TaskDefinition(
        id=uuid.uuid4(),
        unit_id=cohort.unit.id,
        name="Team Task 5.1 - Custom Project",
        abbreviation="T5.1",
        upload_requirements=DOCUMENT_AND_CODE,
        max_quality_pts=5,
        is_graded=graded,
        restrict_status_updates=restrict,
        group_set_id=group_set.id,
    )
    session.add_all([group, definition])

    members = [
        await make_user(session, f"member{i}", name)
        for i, name in enumerate(["Morgan Member", "Riley Member", "Jordan Member"])
    ]
    projects = []
    for member in members:
        project = Project(
            id=uuid.uuid4(),
            unit_id=cohort.unit.id,
            user_id=member.id,
            main_tutor_id=cohort.tutor.id,
        )
        session.add(project)
        await session.flush()
        session.add(GroupMembership(group_id=group.id, project_id=project.id))
        projects.append(project)
    await session.flush()

    task_ids = []
    for project in projects:
        task = Task(
            id=uuid.uuid4(),
            task_definition_id=definition.id,
            project_id=project.id,
            status=TaskStatus.NOT_STARTED.value,
        )
        session.add(task)
        task_ids.append(task.id)
    await session.commit()

    tasks = [await reload(session, Task, task_id) for task_id in task_ids]
    return Team(group=group, definition=definition, members=members, projects=projects, tasks=tasks)


@pytest_asyncio.fixture
async def team(db_session: AsyncSession, cohort: Cohort) -> Team:
    return await build_team(db_session, cohort)


# Auth -------------------------------------------------------------------

@pytest.fixture
def jwt_manager(settings: Settings) -> JWTManager:
    """Create a JWT manager for tests."""
    return JWTManager(
        secret_key=settings.secret_key,
        algorithm="HS256",
        access_token_expire_minutes=30,
    )


def bearer(jwt_manager: JWTManager, user: User) -> dict:
    token, _, _ = jwt_manager.create_access_token(user_id=user.id, username=user.username)
    return {"Authorization": f"Bearer {token}"}
