"""Upload validation and prompt-safety helpers."""

from __future__ import annotations

import re
from pathlib import Path

from docqa import config
from docqa.errors import FormatMismatch, TooLarge, UnsupportedMediaType
from docqa.models import Document

PDF_MEDIA_TYPE = "application/pdf"
TEXT_MEDIA_TYPES = {"text/plain", "text/markdown"}
SUPPORTED_MEDIA_TYPES = {PDF_MEDIA_TYPE, *TEXT_MEDIA_TYPES}

_MEDIA_TYPE_ALIASES = {
    "text/x-markdown": "text/markdown",
    "application/x-pdf": PDF_MEDIA_TYPE,
}
_GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

EXTENSION_MEDIA_TYPES = {
    ".pdf": PDF_MEDIA_TYPE,
    ".txt": "text/plain",
    ".rst": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}

PDF_SIGNATURE = b"%PDF-"

_NON_SPACE = re.compile(r"\S")

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"ignore\s+the\s+above", re.IGNORECASE),
    re.compile(r"system\s+prompt", re.IGNORECASE),
    re.compile(r"developer\s+message", re.IGNORECASE),
    re.compile(r"reveal\s+(your\s+)?instructions", re.IGNORECASE),
    re.compile(r"jailbreak", re.IGNORECASE),
]


def resolve_media_type(declared: str, filename: str = "") -> str:
    """Normalize a declared media type, falling back to the file extension for generic types."""
    media_type = declared.split(";", 1)[0].strip().lower()
    media_type = _MEDIA_TYPE_ALIASES.get(media_type, media_type)
    if media_type in _GENERIC_MEDIA_TYPES:
        ext = Path(filename).suffix.lower()
        media_type = EXTENSION_MEDIA_TYPES.get(ext, media_type)
    if media_type not in SUPPORTED_MEDIA_TYPES:
        allowed = ", ".join(sorted(SUPPORTED_MEDIA_TYPES))
        raise UnsupportedMediaType(
            f"Unsupported media type '{declared or 'unknown'}'. Allowed: {allowed}."
        )
    return media_type


def validate_upload_size(size_bytes: int) -> None:
    max_bytes = config.MAX_UPLOAD_FILE_MB * 1024 * 1024
    if size_bytes > max_bytes:
        raise TooLarge(f"File exceeds size limit ({config.MAX_UPLOAD_FILE_MB} MB).")


def check_signature(content: bytes, media_type: str) -> None:
    if media_type == PDF_MEDIA_TYPE and PDF_SIGNATURE not in content[:1024]:
        raise FormatMismatch("Declared application/pdf but the content has no PDF signature.")
    if media_type in TEXT_MEDIA_TYPES:
        if content.lstrip().startswith(PDF_SIGNATURE):
            raise FormatMismatch(f"Declared {media_type} but the content is a PDF.")
        if b"\x00" in content:
            raise FormatMismatch(f"Declared {media_type} but the content is binary.")


def validate_document(document: Document) -> str:
    """Run the cheap upfront checks and return the resolved media type."""
    validate_upload_size(document.size)
    media_type = resolve_media_type(document.media_type, document.filename)
    check_signature(document.content, media_type)
    return media_type


def redact_injection_lines(text: str) -> tuple[str, int]:
    """
    Blank out lines that look like prompt injection attempts.

    Blanked lines keep their length so character offsets into the text stay valid.
    Returns the redacted text and the number of lines blanked.
    """
    out: list[str] = []
    filtered = 0
    for line in text.splitlines(keepends=True):
        if any(pattern.search(line) for pattern in _INJECTION_PATTERNS):
            out.append(_NON_SPACE.sub(" ", line))
            filtered += 1
            continue
        out.append(line)
    return "".join(out), filtered


def quote_supported_by_passage(quote: str, passage_text: str) -> bool:
    q = " ".join(quote.lower().split())
    c = " ".join(passage_text.lower().split())
    if not q:
        return False
    return q in c
