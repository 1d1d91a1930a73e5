"""Create the job row and hand the whole record set to the work queue."""

from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.api.schemas.imports import ImportOptions
from app.db.models.import_job import ImportStatus
from app.services import job_ledger
from app.services.progress_tracker import build_snapshot, publish_progress

logger = logging.getLogger(__name__)

Dispatcher = Callable[[dict[str, Any]], Any]


def enqueue_import(payload: dict[str, Any]) -> None:
    """Durably enqueue one import task; the job id doubles as the task id."""
    from app.workers.tasks.process_import import process_import_task

    process_import_task.apply_async(
        args=(payload,), queue="imports", task_id=payload["job_id"]
    )


def submit_import(
    session: Session,
    *,
    import_type: str,
    school_id: str,
    user_id: str,
    file_name: str,
    file_size: int,
    records: list[dict[str, Any]],
    options: ImportOptions,
    context: dict[str, Any] | None = None,
    dispatch: Dispatcher | None = None,
) -> dict[str, Any]:
    """Persist a PENDING job, enqueue it, and return without waiting."""
    dispatch = dispatch or enqueue_import
    job = job_ledger.create_job(
        session,
        import_type=import_type,
        school_id=school_id,
        user_id=user_id,
        file_name=file_name,
        file_size=file_size,
        total_records=len(records),
        options=options.model_dump(),
    )
    session.commit()

    snapshot = build_snapshot(len(records))
    publish_progress(job.id, snapshot, status=ImportStatus.PENDING.value, message="Queued")

    payload = {
        "job_id": job.id,
        "import_type": import_type,
        "school_id": school_id,
        "user_id": user_id,
        "file_name": file_name,
        "records": records,
        "options": options.model_dump(),
        "context": context or {},
    }
    try:
        dispatch(payload)
    except Exception as e:
        logger.error(f"Failed to enqueue import job {job.id}: {e}", exc_info=True)
        session.rollback()
        job_ledger.mark_failed(session, job.id, f"Failed to queue import: {e}")
        session.commit()
        raise

    logger.info(f"Queued {import_type} import job {job.id} with {len(records)} records")
    return {
        "job_id": job.id,
        "status": ImportStatus.PENDING.value,
        "progress": snapshot,
        "submitted_at": job.created_at,
    }
