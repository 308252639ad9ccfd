"""
Rendering Engine - evidence PDF assembly.
"""

from taskflow.engines.rendering.renderer import (
    EvidenceRenderer,
    PdfEvidenceRenderer,
    RenderFailure,
    RenderRequest,
    ResolvedFile,
    compress_pdf,
)

__all__ = [
    "EvidenceRenderer",
    "PdfEvidenceRenderer",
    "RenderFailure",
    "RenderRequest",
    "ResolvedFile",
    "compress_pdf",
]
