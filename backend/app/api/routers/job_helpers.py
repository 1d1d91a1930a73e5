"""Shared helpers for shaping job responses and translating pipeline errors."""
from __future__ import annotations

import logging

from fastapi import HTTPException, status

from app.api.schemas.job import JobStatus
from app.core.exceptions import (
    BulkImportError,
    FileRejectedError,
    InvalidImportOptionsError,
    InvalidJobTransitionError,
    JobNotFoundError,
    ParseRejectedError,
    ReferenceNotFoundError,
    TemplateNotRecognizedError,
    TemplateReferenceError,
    TemplateUnreadableError,
    TermLockedError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[BulkImportError], int], ...] = (
    (FileRejectedError, status.HTTP_400_BAD_REQUEST),
    (ParseRejectedError, status.HTTP_400_BAD_REQUEST),
    (InvalidImportOptionsError, status.HTTP_400_BAD_REQUEST),
    (TemplateUnreadableError, status.HTTP_400_BAD_REQUEST),
    (TemplateNotRecognizedError, status.HTTP_400_BAD_REQUEST),
    (TemplateReferenceError, status.HTTP_404_NOT_FOUND),
    (ReferenceNotFoundError, status.HTTP_404_NOT_FOUND),
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (TermLockedError, status.HTTP_403_FORBIDDEN),
    (InvalidJobTransitionError, status.HTTP_409_CONFLICT),
)


def to_http_error(exc: BulkImportError) -> HTTPException:
    """Map a pipeline error onto the response the caller should see."""
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    detail: dict = {"code": exc.code, "message": exc.message}
    if isinstance(exc, FileRejectedError):
        detail["errors"] = exc.reasons
    elif isinstance(exc, ParseRejectedError):
        detail["summary"] = exc.summary
        detail["errors"] = exc.errors
    elif isinstance(exc, ReferenceNotFoundError):
        detail["alternatives"] = exc.alternatives
    return HTTPException(status_code=status_code, detail=detail)


def serialize_job(summary: dict, progress_payload: dict | None) -> JobStatus:
    """Combine ledger state + cached progress snapshot into a response schema.

    The ledger is authoritative for counts; Redis only contributes the message.
    """
    progress_payload = progress_payload or {}
    message = progress_payload.get("message")
    if not message or progress_payload.get("status") != summary["status"]:
        message = f"Processed {summary['processed']}/{summary['total_records']} records"
    return JobStatus(message=message, **summary)
