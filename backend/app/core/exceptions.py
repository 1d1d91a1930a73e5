"""Domain errors raised by the import pipeline.

Routers translate these into HTTP responses; the worker converts record-level
problems into failure outcomes and never lets them escape a batch.
"""

from __future__ import annotations

from typing import Any


class BulkImportError(Exception):
    """Base class for every error the import pipeline raises on purpose."""

    code = "import_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FileRejectedError(BulkImportError):
    """Upload failed size/type/extension checks before any parsing."""

    code = "file_rejected"

    def __init__(self, reasons: list[str]):
        super().__init__(f"File validation failed: {', '.join(reasons)}")
        self.reasons = reasons


class ParseRejectedError(BulkImportError):
    """One or more rows could not be parsed; the submission is refused."""

    code = "parse_rejected"

    def __init__(self, errors: list[dict[str, Any]], summary: str):
        super().__init__(f"File parsing failed with {len(errors)} error(s)")
        self.errors = errors
        self.summary = summary


class InvalidImportOptionsError(BulkImportError):
    code = "invalid_options"


class TemplateUnreadableError(BulkImportError):
    """The uploaded workbook could not be opened at all."""

    code = "template_unreadable"


class TemplateNotRecognizedError(BulkImportError):
    """The workbook opened but carries no usable embedded metadata."""

    code = "template_not_recognized"


class TemplateReferenceError(BulkImportError):
    """Embedded metadata points at a class/subject/term that no longer exists."""

    code = "template_reference_missing"


class TermLockedError(BulkImportError):
    code = "term_locked"


class ReferenceNotFoundError(BulkImportError):
    """A human-readable label did not resolve to a tenant-scoped record."""

    code = "reference_not_found"

    def __init__(self, kind: str, value: str, alternatives: list[str]):
        options = ", ".join(alternatives) if alternatives else "none"
        super().__init__(f"{kind} '{value}' not found. Available: {options}")
        self.kind = kind
        self.value = value
        self.alternatives = alternatives


class JobNotFoundError(BulkImportError):
    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class InvalidJobTransitionError(BulkImportError):
    code = "invalid_transition"
