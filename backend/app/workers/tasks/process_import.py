"""Celery task that runs one bulk import job."""

from __future__ import annotations

import logging

from sqlalchemy.exc import DisconnectionError, OperationalError

from app.core.config import get_settings
from app.services.batch_worker import run_import_job
from app.services.progress_tracker import publish_progress
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)
settings = get_settings()


@celery_app.task(
    bind=True,
    name="app.workers.tasks.process_import",
    acks_late=True,
    autoretry_for=(OperationalError, DisconnectionError),
    max_retries=settings.import_task_max_retries,
    retry_backoff=True,
)
def process_import_task(self, payload: dict):
    """Process the job's batches and report progress after each one."""
    job_id = payload["job_id"]
    logger.info(
        f"Starting {payload['import_type']} import job {job_id} "
        f"(attempt {self.request.retries + 1})"
    )

    def on_progress(job_id: str, snapshot: dict, status: str) -> None:
        publish_progress(job_id, snapshot, status=status)
        try:
            self.update_state(state="PROGRESS", meta={"job_id": job_id, **snapshot})
        except Exception as e:
            # Progress on the result backend is informational only.
            logger.warning(f"Could not update task state for job {job_id}: {e}")

    return run_import_job(payload, on_progress=on_progress)
