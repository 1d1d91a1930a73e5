"""Run one import job: batches in order, each record isolated in a savepoint."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.schemas.imports import ImportOptions
from app.core.config import get_settings
from app.db.models.import_job import ImportStatus
from app.db.session import get_fresh_session
from app.services import job_ledger
from app.services.importers import get_importer
from app.services.importers.base import ImportScope, RecordImporter, RecordOutcome
from app.services.progress_tracker import build_snapshot
from app.utils.batching import chunked

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, int], str], None]

UNIQUE_VIOLATION = "23505"


def _is_unrecoverable(exc: Exception) -> bool:
    """Connection-level failures end the job instead of a single record."""
    if isinstance(exc, DisconnectionError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _is_unique_violation(exc: IntegrityError) -> bool:
    """PostgreSQL reports a SQLSTATE; SQLite only a message."""
    sqlstate = getattr(exc.orig, "sqlstate", None)
    if sqlstate:
        return sqlstate == UNIQUE_VIOLATION
    return str(exc.orig).lstrip().upper().startswith("UNIQUE")


def process_record(
    session: Session,
    importer: RecordImporter,
    record: dict[str, Any],
    ordinal: int,
    scope: ImportScope,
    options: ImportOptions,
) -> RecordOutcome:
    """Validate, de-duplicate and persist one record; never raises for record problems."""
    record = dict(record)
    try:
        with session.begin_nested():
            reason = importer.validate(session, record, scope)
            if reason is not None:
                return RecordOutcome(ordinal, record, success=False, error=reason)

            existing = None
            if options.skip_duplicates or options.update_existing:
                existing = importer.find_existing(session, record, scope)

            if existing is None:
                entity_id = importer.create(session, record, scope)
            elif options.skip_duplicates:
                return RecordOutcome(
                    ordinal, record, success=False, error=importer.duplicate_reason(record)
                )
            else:
                entity_id = importer.update(session, existing, record, scope)
        return RecordOutcome(ordinal, record, success=True, entity_id=entity_id)
    except IntegrityError as e:
        if _is_unique_violation(e):
            logger.warning(f"Record {ordinal} violates a unique constraint: {e.orig}")
            return RecordOutcome(
                ordinal, record, success=False, error=importer.duplicate_reason(record)
            )
        logger.warning(f"Record {ordinal} violates a database constraint: {e.orig}")
        return RecordOutcome(
            ordinal, record, success=False, error=f"Database constraint violated: {e.orig}"
        )
    except SoftTimeLimitExceeded:
        raise
    except Exception as e:
        if _is_unrecoverable(e):
            raise
        logger.warning(f"Record {ordinal} failed: {e}")
        return RecordOutcome(ordinal, record, success=False, error=str(e) or type(e).__name__)


def process_batch(
    session: Session,
    importer: RecordImporter,
    batch: list[dict[str, Any]],
    first_ordinal: int,
    scope: ImportScope,
    options: ImportOptions,
) -> list[RecordOutcome]:
    """One outcome per input record, in input order."""
    return [
        process_record(session, importer, record, first_ordinal + index, scope, options)
        for index, record in enumerate(batch)
    ]


def run_import_job(
    payload: dict[str, Any],
    *,
    session_factory: Callable[[], Session] | None = None,
    on_progress: ProgressCallback | None = None,
    pause_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Drive a job from PENDING (or a half-finished PROCESSING) to a terminal state.

    A redelivered job resumes at ``processed_records``; terminal jobs are left
    alone. Errors escaping the per-record boundary fail the job; if even that
    cannot be recorded the exception propagates so the queue can redeliver.
    """
    settings = get_settings()
    job_id = payload["job_id"]
    importer = get_importer(payload["import_type"])
    options = ImportOptions(**payload["options"])
    records = payload["records"]
    scope = ImportScope(school_id=payload["school_id"], context=payload.get("context") or {})
    pause = settings.batch_pause_seconds if pause_seconds is None else pause_seconds
    session = (session_factory or get_fresh_session)()

    def _notify(snapshot: dict[str, int], status: str) -> None:
        if on_progress is not None:
            on_progress(job_id, snapshot, status)

    try:
        job = job_ledger.start_job(session, job_id)
        session.commit()
        if job is None:
            logger.info(f"Import job {job_id} is missing or already finished; skipping")
            return {"job_id": job_id, "status": None, "skipped": True}

        total = job.total_records
        processed = job.processed_records
        successful = job.successful_records
        failed = job.failed_records
        if processed:
            logger.info(f"Resuming import job {job_id} at record {processed + 1}/{total}")

        def _summary(status: str) -> dict[str, Any]:
            return {
                "job_id": job_id,
                "status": status,
                **build_snapshot(total, processed, successful, failed),
            }

        try:
            batches = list(chunked(records[processed:], options.batch_size))
            for index, batch in enumerate(batches):
                if job_ledger.is_cancel_requested(session, job_id):
                    job_ledger.mark_failed(session, job_id, job_ledger.CANCELLED_MESSAGE)
                    session.commit()
                    logger.info(f"Import job {job_id} cancelled after {processed} records")
                    _notify(
                        build_snapshot(total, processed, successful, failed),
                        ImportStatus.FAILED.value,
                    )
                    return _summary(ImportStatus.FAILED.value)

                outcomes = process_batch(session, importer, batch, processed + 1, scope, options)
                job_ledger.record_batch(session, job_id, outcomes)
                session.commit()

                batch_failed = sum(1 for o in outcomes if not o.success)
                processed += len(outcomes)
                successful += len(outcomes) - batch_failed
                failed += batch_failed
                logger.info(
                    f"Import job {job_id}: batch {index + 1}/{len(batches)} done, "
                    f"{processed}/{total} processed ({failed} failed)"
                )
                _notify(
                    build_snapshot(total, processed, successful, failed),
                    ImportStatus.PROCESSING.value,
                )
                if pause and index < len(batches) - 1:
                    sleep(pause)

            job_ledger.mark_completed(session, job_id)
            session.commit()
        except Exception as e:
            logger.error(f"Import job {job_id} aborted: {e}", exc_info=True)
            session.rollback()
            try:
                job_ledger.mark_failed(session, job_id, f"Import failed: {e}")
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.error(f"Could not record failure of import job {job_id}", exc_info=True)
                raise e
            _notify(build_snapshot(total, processed, successful, failed), ImportStatus.FAILED.value)
            return _summary(ImportStatus.FAILED.value)

        _notify(build_snapshot(total, processed, successful, failed), ImportStatus.COMPLETED.value)
        return _summary(ImportStatus.COMPLETED.value)
    finally:
        session.close()
