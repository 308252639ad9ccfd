"""
Filesystem staging for submitted work.

Layout under the staging root, per task (or group submission) key:

    new/<key>/            uploads waiting to be processed
    in_process/<key>/     working copy while evidence is rendered
    done/<key>.zip        archive of the submitted source files
    pdf/<abbrev>-<key>.pdf  rendered evidence

Source files inside a phase are named NNN-<type>.<ext>. Every path is
derived from the StagingArea; nothing here changes the working directory.
"""

import contextlib
import os
import re
import shutil
import uuid
import zipfile
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Tuple

import PIL.Image

from taskflow.errors import StagingError
from taskflow.logging_config import get_logger

logger = get_logger(__name__)


class StagingPhase(str, Enum):
    NEW = "new"
    IN_PROCESS = "in_process"
    DONE = "done"
    PDF = "pdf"


SCRATCH_DIR = ".incoming"

# Legacy uploads used NNN.<type>.<ext>; both spellings are source files
SOURCE_FILE_PATTERN = re.compile(r"^\d{3}[-.](cover|document|code|image)")
IMAGE_FILE_PATTERN = re.compile(r"^\d{3}[-.]image")


def source_filename(index: int, upload_type: str, extension: str) -> str:
    """Staged name for the index-th uploaded file, e.g. 002-code.py."""
    return f"{index:03d}-{upload_type}{extension.lower()}"


def sanitized_filename(name: str) -> str:
    return re.sub(r"[^0-9A-Za-z.\-]", "_", name)


def compress_image(path: Path) -> bool:
    """Re-save an image with lossless optimisation. False if Pillow cannot."""
    try:
        with PIL.Image.open(path) as img:
            img.load()
            fmt = img.format
            if fmt == "JPEG":
                img.save(path, format=fmt, quality="keep", optimize=True)
            elif fmt == "PNG":
                img.save(path, format=fmt, optimize=True)
            else:
                return True
    except OSError as exc:
        logger.warning("Could not compress image %s: %s", path.name, exc)
        return False
    return True


class StagingArea:
    """The staging directories and archive belonging to one key."""

    def __init__(self, root: Path, key: str):
        self.root = Path(root)
        self.key = key

    @property
    def new_dir(self) -> Path:
        return self.root / StagingPhase.NEW.value / self.key

    @property
    def in_process_dir(self) -> Path:
        return self.root / StagingPhase.IN_PROCESS.value / self.key

    @property
    def done_archive(self) -> Path:
        return self.root / StagingPhase.DONE.value / f"{self.key}.zip"

    @property
    def scratch_dir(self) -> Path:
        return self.root / SCRATCH_DIR / self.key

    @property
    def is_processing(self) -> bool:
        """Uploads are queued or being rendered."""
        return self.new_dir.is_dir() or self.in_process_dir.is_dir()

    @property
    def has_archive(self) -> bool:
        return self.done_archive.is_file()

    def attempt_dir(self) -> Path:
        """A fresh directory under ``in_process`` owned by one render attempt."""
        return self.in_process_dir / f"attempt-{uuid.uuid4().hex[:12]}"

    def discard_attempt(self, path: Path) -> None:
        """Remove one attempt's directory, and ``in_process`` once it is empty."""
        if path.exists():
            shutil.rmtree(path)
        # Other attempts may still own entries in it
        with contextlib.suppress(OSError):
            self.in_process_dir.rmdir()

    def receive(self, files: Iterable[Tuple[Path, str]]) -> Path:
        """
        Copy uploads into a scratch directory, then move it into ``new``.

        Args:
            files: (temporary path, staged name) pairs in upload order

        Any earlier upload still waiting in ``new`` is replaced.
        """
        scratch = self.scratch_dir
        if scratch.exists():
            shutil.rmtree(scratch)
        scratch.mkdir(parents=True)

        try:
            for source, name in files:
                shutil.copyfile(source, scratch / name)

            self.new_dir.parent.mkdir(parents=True, exist_ok=True)
            if self.new_dir.exists():
                shutil.rmtree(self.new_dir)
            os.replace(scratch, self.new_dir)
        finally:
            if scratch.exists():
                shutil.rmtree(scratch)

        logger.debug("Queued upload in %s", self.new_dir)
        return self.new_dir

    def archive_new(self) -> Path:
        """
        Zip the source files in ``new`` into ``done/<key>.zip``.

        Images are optimised first. ``new`` is removed whether or not the
        archive could be written.
        """
        try:
            if not self.new_dir.is_dir():
                raise StagingError(f"No new submission to archive for {self.key}")

            names = sorted(p.name for p in self.new_dir.iterdir() if p.is_file())
            for name in names:
                if IMAGE_FILE_PATTERN.match(name):
                    compress_image(self.new_dir / name)

            self.done_archive.parent.mkdir(parents=True, exist_ok=True)
            partial = self.done_archive.with_name(self.done_archive.name + ".partial")
            with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                archive.writestr(f"{self.key}/", "")
                for name in names:
                    if SOURCE_FILE_PATTERN.match(name):
                        archive.write(self.new_dir / name, arcname=f"{self.key}/{name}")
            os.replace(partial, self.done_archive)
        finally:
            if self.new_dir.exists():
                shutil.rmtree(self.new_dir)

        logger.debug("Archived %s", self.done_archive)
        return self.done_archive

    def extract_archive(self, destination: Path) -> List[Path]:
        """Unpack the archived files, without their folder, into destination."""
        destination.mkdir(parents=True, exist_ok=True)
        extracted = []
        with zipfile.ZipFile(self.done_archive) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                name = PurePosixPath(info.filename).name
                if not SOURCE_FILE_PATTERN.match(name):
                    continue
                target = destination / name
                with archive.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                extracted.append(target)
        return extracted

    def stage(self, destination: Optional[Path] = None) -> Path:
        """
        Prepare ``in_process`` (or one attempt's directory in it) from the
        newest source available.

        New uploads are archived first so the archive is always the
        source; a re-run with nothing new re-uses the existing archive.
        """
        target = Path(destination) if destination is not None else self.in_process_dir
        if target.exists():
            shutil.rmtree(target)

        if self.new_dir.is_dir():
            self.archive_new()

        if not self.has_archive:
            raise StagingError(f"Nothing to process for {self.key}")

        self.extract_archive(target)
        return target

    def requeue(self) -> bool:
        """Copy the archived files back into ``new`` for reprocessing."""
        if not self.has_archive:
            return False
        self.extract_archive(self.new_dir)
        return True


class StagingStore:
    """Factory for StagingArea objects under one root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def ensure_layout(self) -> None:
        for phase in StagingPhase:
            (self.root / phase.value).mkdir(parents=True, exist_ok=True)

    def area_for_key(self, key: str) -> StagingArea:
        return StagingArea(self.root, key)

    def pending_keys(self) -> List[str]:
        """Keys with uploads waiting in ``new``, oldest first."""
        new_root = self.root / StagingPhase.NEW.value
        if not new_root.is_dir():
            return []
        entries = [p for p in new_root.iterdir() if p.is_dir()]
        entries.sort(key=lambda p: p.stat().st_mtime)
        return [p.name for p in entries]

    def evidence_path(self, abbreviation: str, key: str) -> Path:
        name = sanitized_filename(f"{abbreviation}-{key}") + ".pdf"
        return self.root / StagingPhase.PDF.value / name

    def write_evidence(self, path: Path, data: bytes) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".partial")
        partial.write_bytes(data)
        os.replace(partial, path)
        return path
