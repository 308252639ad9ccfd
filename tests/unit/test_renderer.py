"""Unit tests for evidence rendering and staged file resolution."""

import fitz
import pytest
import pytest_asyncio

from conftest import write_code, write_pdf, write_png
from taskflow.config import Settings
from taskflow.engines.rendering.renderer import (
    PdfEvidenceRenderer,
    RenderFailure,
    RenderRequest,
    ResolvedFile,
    compress_pdf,
)
from taskflow.engines.staging.encoding import CodeEncodingError
from taskflow.engines.submission.pipeline import SubmissionPipeline
from taskflow.errors import MissingFileError
from taskflow.kernel.models.task import UploadType


class TestPdfEvidenceRenderer:
    def test_renders_every_kind_of_file(self, tmp_path):
        files = [
            ResolvedFile(write_pdf(tmp_path / "000-document.pdf"), UploadType.DOCUMENT, "Report"),
            ResolvedFile(write_png(tmp_path / "001-image.png", size=(80, 40)), UploadType.IMAGE, "Screenshot"),
            ResolvedFile(write_code(tmp_path / "002-code.py", "print(1)\n" * 200), UploadType.CODE, "Program"),
        ]
        request = RenderRequest(
            base_dir=tmp_path,
            files=files,
            institution_name="Test University",
            title="Pass Task 1.1",
            subtitle="Alex Student (P1.1)",
        )

        data = compress_pdf(PdfEvidenceRenderer().render(request))

        with fitz.open(stream=data, filetype="pdf") as doc:
            # title + document + image + at least two pages of code
            assert doc.page_count >= 5
            assert doc.metadata["title"] == "Pass Task 1.1"
            assert "Test University" in doc[0].get_text()
            assert doc[2].rect.width > doc[2].rect.height

    def test_non_pdf_document_fails_with_log(self, tmp_path):
        bogus = write_png(tmp_path / "000-document.png")
        request = RenderRequest(
            base_dir=tmp_path,
            files=[ResolvedFile(bogus, UploadType.DOCUMENT, "Report")],
            institution_name="Test University",
            title="Pass Task 1.1",
        )

        with pytest.raises(RenderFailure) as exc_info:
            PdfEvidenceRenderer().render(request)

        assert "Report" in str(exc_info.value)
        assert "000-document.png" in exc_info.value.log_text


class TestResolveRequiredFiles:
    """Matching upload requirements to staged files."""

    @pytest_asyncio.fixture
    async def pipeline(self, tmp_path):
        settings = Settings(staging_root=tmp_path / "work", render_workers=1)
        pipeline = SubmissionPipeline(settings=settings)
        yield pipeline
        await pipeline.close()

    @pytest.fixture
    def area(self, pipeline):
        area = pipeline.store.area_for_key("task-1")
        area.in_process_dir.mkdir(parents=True)
        return area

    def test_files_in_order(self, pipeline, area):
        write_pdf(area.in_process_dir / "000-document.pdf")
        write_code(area.in_process_dir / "001-code.py")

        resolved = pipeline.resolve_required_files(
            area,
            [{"name": "Report", "type": "document"}, {"name": "Program", "type": "code"}],
        )

        assert [(r.path.name, r.name) for r in resolved] == [
            ("000-document.pdf", "Report"),
            ("001-code.py", "Program"),
        ]

    def test_skips_a_header_file(self, pipeline, area):
        write_pdf(area.in_process_dir / "000-cover.pdf")
        write_pdf(area.in_process_dir / "001-document.pdf")

        resolved = pipeline.resolve_required_files(area, [{"name": "Report", "type": "document"}])

        assert resolved[0].path.name == "001-document.pdf"

    def test_legacy_names_renamed(self, pipeline, area):
        write_code(area.in_process_dir / "000.code.py")

        resolved = pipeline.resolve_required_files(area, [{"name": "Program", "type": "code"}])

        assert resolved[0].path.name == "000-code.py"
        assert not (area.in_process_dir / "000.code.py").exists()

    def test_missing_file(self, pipeline, area):
        write_pdf(area.in_process_dir / "000-document.pdf")

        with pytest.raises(MissingFileError) as exc_info:
            pipeline.resolve_required_files(
                area,
                [{"name": "Report", "type": "document"}, {"name": "Program", "type": "code"}],
            )
        assert exc_info.value.message == "File `Program` missing from submission."

    def test_code_encoding_by_mode(self, pipeline, area):
        write_code(area.in_process_dir / "000-code.py", "# naïve\n")
        requirements = [{"name": "Program", "type": "code"}]

        with pytest.raises(CodeEncodingError):
            pipeline.resolve_required_files(area, requirements)

        resolved = pipeline.resolve_required_files(area, requirements, permissive=True)
        assert resolved[0].path.read_bytes().startswith(b"#")
