"""
Checks applied to uploaded files before anything is staged.
"""

from pathlib import Path
from typing import Sequence

import fitz
import PIL.Image
from charset_normalizer import from_bytes

from taskflow.errors import ValidationError
from taskflow.kernel.models.task import UploadType
from taskflow.logging_config import get_logger
from taskflow.schemas.submission import IncomingFile

logger = get_logger(__name__)


def check_descriptor(file: IncomingFile) -> None:
    missing = [
        name
        for name in ("identifier", "display_name", "stored_filename", "declared_type", "temporary_path")
        if getattr(file, name) is None
    ]
    if missing:
        logger.info("Rejecting upload %s: missing %s", file.label, ", ".join(missing))
        raise ValidationError(f"Missing file data for '{file.label}'")
    if not Path(file.temporary_path).is_file():
        raise ValidationError(f"Missing file data for '{file.label}'")


def check_size(file: IncomingFile, max_bytes: int) -> None:
    if Path(file.temporary_path).stat().st_size > max_bytes:
        limit = f"{max_bytes / 1_000_000:g}MB"
        raise ValidationError(
            f"'{file.display_name}' exceeds the {limit} file limit. "
            "Try compressing or reformat and submit again."
        )


def is_pdf(path: Path) -> bool:
    try:
        with fitz.open(path) as doc:
            return doc.is_pdf and doc.page_count > 0
    except (RuntimeError, ValueError):
        return False


def is_image(path: Path) -> bool:
    try:
        with PIL.Image.open(path) as img:
            img.verify()
    except (OSError, SyntaxError, ValueError):
        return False
    return True


def is_text(path: Path) -> bool:
    data = path.read_bytes()
    if not data:
        return True
    return from_bytes(data).best() is not None


_CONTENT_CHECKS = {
    UploadType.COVER: is_pdf,
    UploadType.DOCUMENT: is_pdf,
    UploadType.IMAGE: is_image,
    UploadType.CODE: is_text,
}


def check_content(file: IncomingFile) -> None:
    """The file's bytes must match its declared type."""
    declared = UploadType(file.declared_type)
    if not _CONTENT_CHECKS[declared](Path(file.temporary_path)):
        raise ValidationError(f"'{file.display_name}' is not a valid {declared.value} file")


def validate_incoming(files: Sequence[IncomingFile], max_bytes: int) -> None:
    """
    Reject the whole upload on the first bad file.

    Descriptors are checked for every file before any file is opened.
    """
    for file in files:
        check_descriptor(file)
    for file in files:
        check_size(file, max_bytes)
        check_content(file)
