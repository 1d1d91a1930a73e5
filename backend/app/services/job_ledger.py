"""Persisted state of each import attempt; the single source of truth for polling.

Every mutation is a conditional UPDATE keyed on the current status, and
counters only ever grow through SQL-side increments, so a stale in-memory
copy of a job can never overwrite newer progress.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.exceptions import InvalidJobTransitionError, JobNotFoundError
from app.db.models.import_job import ImportJob, ImportJobError, ImportStatus
from app.services.importers.base import RecordOutcome

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Import cancelled"
ACTIVE_STATUSES = (ImportStatus.PENDING.value, ImportStatus.PROCESSING.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_job(
    session: Session,
    *,
    import_type: str,
    school_id: str,
    user_id: str,
    file_name: str,
    file_size: int,
    total_records: int,
    options: dict[str, Any],
) -> ImportJob:
    job = ImportJob(
        import_type=import_type,
        school_id=school_id,
        user_id=user_id,
        file_name=file_name,
        file_size=file_size,
        status=ImportStatus.PENDING.value,
        total_records=total_records,
        options=options,
    )
    session.add(job)
    session.flush()
    logger.info(
        f"Created {import_type} import job {job.id} for school {school_id} "
        f"({total_records} records)"
    )
    return job


def _transition(
    session: Session,
    job_id: str,
    from_statuses: Iterable[str],
    to_status: ImportStatus,
    **values: Any,
) -> bool:
    result = session.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_(tuple(from_statuses)))
        .values(status=to_status.value, updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _refresh(session: Session, job_id: str) -> ImportJob | None:
    return session.get(ImportJob, job_id, populate_existing=True)


def start_job(session: Session, job_id: str) -> ImportJob | None:
    """Move PENDING -> PROCESSING; a job already PROCESSING is resumed as is.

    Returns None when the job is missing or already terminal.
    """
    if _transition(
        session,
        job_id,
        (ImportStatus.PENDING.value,),
        ImportStatus.PROCESSING,
        started_at=_now(),
    ):
        logger.info(f"Import job {job_id} started")
    job = _refresh(session, job_id)
    if job is None or job.status != ImportStatus.PROCESSING.value:
        return None
    return job


def _stored_error_count(session: Session, job_id: str) -> int:
    return session.scalar(
        select(func.count(ImportJobError.id)).where(ImportJobError.job_id == job_id)
    )


def _append_error(
    session: Session,
    job_id: str,
    position: int,
    *,
    row: int,
    message: str,
    source_row: int | None = None,
    field: str | None = None,
    record: dict[str, Any] | None = None,
) -> None:
    session.add(
        ImportJobError(
            job_id=job_id,
            position=position,
            row=row,
            source_row=source_row,
            field=field,
            message=message,
            record=record,
        )
    )


def record_batch(session: Session, job_id: str, outcomes: Sequence[RecordOutcome]) -> None:
    """Add one batch's counts and failures to the job.

    Runs in the same transaction as the batch's persisted records; the caller
    commits.
    """
    failures = [o for o in outcomes if not o.success]
    stored = _stored_error_count(session, job_id)
    room = max(get_settings().import_max_stored_errors - stored, 0)
    kept, dropped = failures[:room], len(failures) - min(len(failures), room)

    for offset, outcome in enumerate(kept):
        _append_error(
            session,
            job_id,
            stored + offset,
            row=outcome.ordinal,
            source_row=outcome.source_row,
            field=outcome.field,
            message=outcome.error or "Unknown error",
            record=outcome.record,
        )
    session.flush()

    result = session.execute(
        update(ImportJob)
        .where(
            ImportJob.id == job_id,
            ImportJob.status == ImportStatus.PROCESSING.value,
        )
        .values(
            processed_records=ImportJob.processed_records + len(outcomes),
            successful_records=ImportJob.successful_records + (len(outcomes) - len(failures)),
            failed_records=ImportJob.failed_records + len(failures),
            errors_dropped=ImportJob.errors_dropped + dropped,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidJobTransitionError(f"Import job {job_id} is not processing")
    if dropped:
        logger.warning(f"Import job {job_id}: error list full, dropped {dropped} error(s)")


def mark_completed(session: Session, job_id: str) -> bool:
    done = _transition(
        session,
        job_id,
        (ImportStatus.PROCESSING.value,),
        ImportStatus.COMPLETED,
        completed_at=_now(),
    )
    if done:
        logger.info(f"Import job {job_id} completed")
    return done


def mark_failed(session: Session, job_id: str, message: str) -> bool:
    """Terminal failure with a top-level error entry (row 0)."""
    failed = _transition(
        session,
        job_id,
        ACTIVE_STATUSES,
        ImportStatus.FAILED,
        error_message=message,
        completed_at=_now(),
    )
    if failed:
        _append_error(
            session, job_id, _stored_error_count(session, job_id), row=0, message=message
        )
        session.flush()
        logger.error(f"Import job {job_id} failed: {message}")
    return failed


def is_cancel_requested(session: Session, job_id: str) -> bool:
    return (
        session.scalar(select(ImportJob.cancel_requested_at).where(ImportJob.id == job_id))
        is not None
    )


def get_job(session: Session, job_id: str, school_id: str) -> ImportJob:
    """Tenant-scoped lookup; jobs of other schools look exactly like missing ones."""
    job = session.scalars(
        select(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.school_id == school_id)
        .execution_options(populate_existing=True)
    ).first()
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def request_cancel(session: Session, job_id: str, school_id: str) -> ImportJob:
    """Ask a running job to stop; a job still PENDING fails immediately."""
    job = get_job(session, job_id, school_id)
    if ImportStatus(job.status).is_terminal:
        raise InvalidJobTransitionError(f"Import job {job_id} is already {job.status}")

    session.execute(
        update(ImportJob)
        .where(
            ImportJob.id == job_id,
            ImportJob.status.in_(ACTIVE_STATUSES),
            ImportJob.cancel_requested_at.is_(None),
        )
        .values(cancel_requested_at=_now(), updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if job.status == ImportStatus.PENDING.value:
        mark_failed(session, job_id, CANCELLED_MESSAGE)
    logger.info(f"Cancellation requested for import job {job_id}")
    return _refresh(session, job_id)


def serialize_error(error: ImportJobError) -> dict[str, Any]:
    return {
        "row": error.row,
        "source_row": error.source_row,
        "field": error.field,
        "message": error.message,
        "record": error.record,
    }


def get_job_errors(
    session: Session, job_id: str, school_id: str, *, offset: int = 0, limit: int | None = None
) -> list[dict[str, Any]]:
    get_job(session, job_id, school_id)
    query = (
        select(ImportJobError)
        .where(ImportJobError.job_id == job_id)
        .order_by(ImportJobError.position)
        .offset(offset)
    )
    if limit is not None:
        query = query.limit(limit)
    return [serialize_error(e) for e in session.scalars(query)]


ERROR_REPORT_HEADERS = ("Row Number", "Field Name", "Error Message", "Field Value")


def error_report_csv(session: Session, job_id: str, school_id: str) -> str:
    """Every stored error as CSV; rows are numbered as in the uploaded file when known."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(ERROR_REPORT_HEADERS)
    for error in get_job_errors(session, job_id, school_id):
        record = error["record"] or {}
        field = error["field"]
        value = record.get(field) if field else None
        writer.writerow(
            [
                error["source_row"] if error["source_row"] is not None else error["row"],
                field or "",
                error["message"],
                "" if value is None else value,
            ]
        )
    return buffer.getvalue()


def percentage(job: ImportJob) -> int:
    if not job.total_records:
        return 100 if job.status == ImportStatus.COMPLETED.value else 0
    return round(job.processed_records / job.total_records * 100)


def estimated_completion(job: ImportJob, now: datetime | None = None) -> datetime | None:
    """Linear extrapolation from the throughput so far; only while processing."""
    started = _as_utc(job.started_at)
    if job.status != ImportStatus.PROCESSING.value or not job.processed_records or not started:
        return None
    now = now or _now()
    per_record = (now - started) / job.processed_records
    return now + per_record * (job.total_records - job.processed_records)


def summarize_job(job: ImportJob) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "import_type": job.import_type,
        "file_name": job.file_name,
        "status": job.status,
        "total_records": job.total_records,
        "processed": job.processed_records,
        "successful": job.successful_records,
        "failed": job.failed_records,
        "percentage": percentage(job),
        "errors_dropped": job.errors_dropped,
        "error_message": job.error_message,
        "cancel_requested": job.cancel_requested_at is not None,
        "options": job.options or {},
        "created_at": _as_utc(job.created_at),
        "started_at": _as_utc(job.started_at),
        "completed_at": _as_utc(job.completed_at),
        "estimated_completion": estimated_completion(job),
    }


def get_job_status(
    session: Session, job_id: str, school_id: str, *, error_limit: int = 100
) -> dict[str, Any]:
    job = get_job(session, job_id, school_id)
    status = summarize_job(job)
    status["errors"] = get_job_errors(session, job_id, school_id, limit=error_limit)
    return status


def list_jobs(
    session: Session, school_id: str, *, status: str | None = None, limit: int = 50
) -> list[ImportJob]:
    query = select(ImportJob).where(ImportJob.school_id == school_id)
    if status:
        query = query.where(ImportJob.status == status.upper())
    query = query.order_by(ImportJob.created_at.desc()).limit(limit)
    return list(session.scalars(query))
