"""
Evidence rendering: turn a task's staged source files into one PDF.

The pipeline only depends on the EvidenceRenderer protocol. The bundled
PdfEvidenceRenderer concatenates the files with PyMuPDF: PDFs are copied
page for page, images get a page each, code is typeset in a fixed-width
font.
"""

import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import fitz
import PIL.Image

from taskflow import __version__
from taskflow.kernel.models.task import UploadType
from taskflow.logging_config import get_logger

logger = get_logger(__name__)


# letter, matching what students print on
papersize_portrait = (612, 792)
papersize_landscape = (792, 612)
margin = 36

CODE_FONT = "cour"
CODE_FONTSIZE = 8
CODE_LINE_HEIGHT = CODE_FONTSIZE * 1.3
CODE_WRAP_COLUMNS = 110


class RenderFailure(Exception):
    """The renderer could not produce a document. Carries its log, if any."""

    def __init__(self, message: str, log_text: Optional[str] = None):
        super().__init__(message)
        self.log_text = log_text


@dataclass(frozen=True)
class ResolvedFile:
    """A staged file matched to one upload requirement."""
    path: Path
    type: UploadType
    name: str


@dataclass
class RenderRequest:
    base_dir: Path
    files: List[ResolvedFile]
    institution_name: str
    title: str
    subtitle: str = ""


class EvidenceRenderer(Protocol):
    """Blocking: called from a worker thread, never on the event loop."""

    def render(self, request: RenderRequest) -> bytes:
        ...


class PdfEvidenceRenderer:
    """Assemble evidence PDFs with PyMuPDF."""

    def render(self, request: RenderRequest) -> bytes:
        log: List[str] = []
        doc = fitz.open()
        try:
            self._title_page(doc, request)
            for resolved in request.files:
                log.append(f"{resolved.path.name}: {resolved.type.value}")
                try:
                    self._append(doc, resolved)
                except (RuntimeError, OSError, ValueError) as exc:
                    log.append(f"  error: {exc}")
                    raise RenderFailure(
                        f"Could not include '{resolved.name}' ({resolved.path.name}) in the evidence",
                        log_text="\n".join(log),
                    ) from exc

            doc.set_metadata(
                {
                    "title": request.title,
                    "subject": request.subtitle,
                    "creator": request.institution_name,
                    "producer": f"Taskflow {__version__}",
                }
            )
            logger.debug("Assembled %d pages from %d files", doc.page_count, len(request.files))
            return doc.tobytes(garbage=3, deflate=True)
        finally:
            doc.close()

    def _append(self, doc: "fitz.Document", resolved: ResolvedFile) -> None:
        if resolved.type in (UploadType.COVER, UploadType.DOCUMENT):
            with fitz.open(resolved.path) as src:
                if not src.is_pdf:
                    raise ValueError("not a PDF document")
                doc.insert_pdf(src)
        elif resolved.type == UploadType.IMAGE:
            self._image_page(doc, resolved.path)
        else:
            self._code_pages(doc, resolved)

    def _title_page(self, doc: "fitz.Document", request: RenderRequest) -> None:
        w, h = papersize_portrait
        page = doc.new_page(width=w, height=h)
        page.insert_textbox(
            fitz.Rect(margin, margin * 3, w - margin, h / 2),
            "\n\n".join(s for s in (request.institution_name, request.title, request.subtitle) if s),
            fontsize=16,
            align=fitz.TEXT_ALIGN_CENTER,
        )

    def _image_page(self, doc: "fitz.Document", path: Path) -> None:
        with PIL.Image.open(path) as im:
            landscape = im.width > im.height
        w, h = papersize_landscape if landscape else papersize_portrait
        page = doc.new_page(width=w, height=h)
        page.insert_image(fitz.Rect(margin, margin, w - margin, h - margin), filename=str(path))

    def _code_pages(self, doc: "fitz.Document", resolved: ResolvedFile) -> None:
        text = resolved.path.read_text(encoding="utf-8", errors="replace")
        lines = [f"{resolved.name} ({resolved.path.name})", ""]
        for raw in text.expandtabs(4).splitlines():
            lines.extend(textwrap.wrap(raw, CODE_WRAP_COLUMNS, drop_whitespace=False) or [""])

        w, h = papersize_portrait
        per_page = int((h - 2 * margin) // CODE_LINE_HEIGHT)
        for start in range(0, len(lines), per_page):
            page = doc.new_page(width=w, height=h)
            page.insert_text(
                fitz.Point(margin, margin + CODE_FONTSIZE),
                lines[start:start + per_page],
                fontname=CODE_FONT,
                fontsize=CODE_FONTSIZE,
            )


def compress_pdf(data: bytes) -> bytes:
    """Garbage-collect and deflate a rendered PDF."""
    with fitz.open(stream=data, filetype="pdf") as doc:
        return doc.tobytes(garbage=4, deflate=True)
