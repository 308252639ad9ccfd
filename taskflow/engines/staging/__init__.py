"""
Staging Engine - on-disk phases of submitted files and source encoding.
"""

from taskflow.engines.staging.store import (
    StagingArea,
    StagingPhase,
    StagingStore,
)
from taskflow.engines.staging.encoding import (
    CodeEncodingError,
    EncodingMode,
    normalize_code_file,
)

__all__ = [
    "StagingArea",
    "StagingPhase",
    "StagingStore",
    "CodeEncodingError",
    "EncodingMode",
    "normalize_code_file",
]
