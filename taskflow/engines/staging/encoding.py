"""
Source-code encoding normalisation for evidence rendering.

Student code arrives in whatever encoding their editor used. Before it is
typeset it is converted either to plain ASCII (first attempt) or to UTF-8
with unconvertible sequences replaced by "?" (retry).
"""

from enum import Enum
from pathlib import Path

from charset_normalizer import from_bytes

from taskflow.logging_config import get_logger

logger = get_logger(__name__)

BYTE_ORDER_MARK = "\ufeff"
REPLACEMENT_CHARACTER = "\ufffd"
PLACEHOLDER = "?"


class EncodingMode(str, Enum):
    RESTRICTIVE = "restrictive"
    PERMISSIVE = "permissive"


class CodeEncodingError(Exception):
    """A code file cannot be represented in the restrictive character set."""

    def __init__(self, path: Path, encoding: str):
        super().__init__(f"{path.name} ({encoding}) contains characters outside ASCII")
        self.path = path
        self.encoding = encoding


def detect_encoding(data: bytes) -> str:
    """Best guess at the byte encoding of a file; utf-8 when undecidable."""
    if not data:
        return "utf-8"
    match = from_bytes(data).best()
    if match is None:
        return "utf-8"
    return match.encoding


def convert_source(data: bytes, encoding: str, mode: EncodingMode, name: str = "file") -> bytes:
    """
    Convert raw source bytes from ``encoding`` into the target character set.

    Raises:
        CodeEncodingError: restrictive mode and the text is not pure ASCII
    """
    text = data.decode(encoding, errors="replace").replace(REPLACEMENT_CHARACTER, PLACEHOLDER)
    text = text.replace(BYTE_ORDER_MARK, "")

    if EncodingMode(mode) == EncodingMode.RESTRICTIVE:
        try:
            return text.encode("ascii")
        except UnicodeEncodeError:
            raise CodeEncodingError(Path(name), encoding) from None

    return text.encode("utf-8", errors="replace")


def normalize_code_file(path: Path, mode: EncodingMode) -> str:
    """Rewrite a code file in place. Returns the detected source encoding."""
    path = Path(path)
    data = path.read_bytes()
    encoding = detect_encoding(data)
    path.write_bytes(convert_source(data, encoding, mode, name=str(path)))

    logger.debug("Normalised %s from %s (%s)", path.name, encoding, EncodingMode(mode).value)
    return encoding
