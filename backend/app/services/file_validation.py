"""Reject uploads by size, media type and extension before parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePath

from app.core.config import get_settings

DELIMITED = "delimited"
SPREADSHEET = "spreadsheet"

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Extension -> (kind, media types browsers send for it)
ALLOWED_FORMATS: dict[str, tuple[str, frozenset[str]]] = {
    ".csv": (
        DELIMITED,
        frozenset({"text/csv", "application/csv", "application/vnd.ms-excel"}),
    ),
    ".xlsx": (SPREADSHEET, frozenset({XLSX_MEDIA_TYPE})),
}
ALLOWED_MEDIA_TYPES = frozenset().union(*(types for _, types in ALLOWED_FORMATS.values()))

ZIP_SIGNATURE = b"PK\x03\x04"


@dataclass
class FileValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    kind: str | None = None


def _format_megabytes(size: int) -> str:
    return f"{size / 1024 / 1024:.1f}MB"


def validate_upload(
    content: bytes,
    declared_size: int | None,
    media_type: str | None,
    file_name: str | None,
    *,
    max_bytes: int | None = None,
) -> FileValidationResult:
    """Check an upload against the import limits; collects every failing reason."""
    limit = max_bytes if max_bytes is not None else get_settings().import_max_file_bytes
    errors: list[str] = []

    size = max(declared_size or 0, len(content))
    if size == 0:
        errors.append("File is empty")
    elif size > limit:
        errors.append(
            f"File size ({_format_megabytes(size)}) exceeds maximum allowed size "
            f"({_format_megabytes(limit)})"
        )

    media = (media_type or "").split(";")[0].strip().lower()
    extension = PurePath(file_name or "").suffix.lower()

    if not file_name:
        errors.append("Filename is required")

    if media not in ALLOWED_MEDIA_TYPES:
        errors.append("Invalid file type. Allowed types: CSV, XLSX")

    kind = None
    if extension not in ALLOWED_FORMATS:
        allowed = ", ".join(ALLOWED_FORMATS)
        errors.append(f"Invalid file extension. Allowed extensions: {allowed}")
    else:
        kind, media_types = ALLOWED_FORMATS[extension]
        if media in ALLOWED_MEDIA_TYPES and media not in media_types:
            errors.append(
                f"File type '{media}' does not match extension '{extension}'"
            )

    if kind == SPREADSHEET and content and not content.startswith(ZIP_SIGNATURE):
        errors.append("File content is not a valid XLSX workbook")

    if errors:
        return FileValidationResult(is_valid=False, errors=errors)
    return FileValidationResult(is_valid=True, errors=[], kind=kind)
