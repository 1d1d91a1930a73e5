"""Import job tracking endpoints (status polling, errors, cancellation)."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.dependencies.db import get_session
from app.api.dependencies.tenant import TenantContext, get_tenant
from app.api.routers.job_helpers import serialize_job, to_http_error
from app.api.schemas.job import JobError, JobStatus
from app.core.exceptions import BulkImportError
from app.services import job_ledger
from app.services.progress_tracker import fetch_progress

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/",
    summary="List import jobs of the caller's school",
    response_model=list[JobStatus],
)
async def list_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    status_filter: str | None = Query(
        None, alias="status", description="Filter by status (PENDING, PROCESSING, COMPLETED, FAILED)"
    ),
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> list[JobStatus]:
    """Jobs are returned newest first."""
    try:
        jobs = job_ledger.list_jobs(db, tenant.school_id, status=status_filter, limit=limit)
        return [
            serialize_job(job_ledger.summarize_job(job), fetch_progress(job.id)) for job in jobs
        ]
    except Exception as e:
        logger.error(f"Failed to list import jobs: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to retrieve jobs: {str(e)}",
        )


@router.get(
    "/{job_id}",
    summary="Fetch job state and progress",
    response_model=JobStatus,
)
async def get_job(
    job_id: str,
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> JobStatus:
    """Expose job state for polling; jobs of other schools are reported as missing."""
    try:
        summary = job_ledger.get_job_status(db, job_id, tenant.school_id)
    except BulkImportError as e:
        raise to_http_error(e) from e
    return serialize_job(summary, fetch_progress(job_id))


@router.get(
    "/{job_id}/errors",
    summary="List record-level errors of a job",
    response_model=list[JobError],
)
async def get_job_errors(
    job_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=1000),
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> list[JobError]:
    try:
        errors = job_ledger.get_job_errors(
            db, job_id, tenant.school_id, offset=offset, limit=limit
        )
    except BulkImportError as e:
        raise to_http_error(e) from e
    return [JobError(**error) for error in errors]


@router.get("/{job_id}/errors.csv", summary="Download the error report of a job")
async def download_error_report(
    job_id: str,
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> Response:
    try:
        content = job_ledger.error_report_csv(db, job_id, tenant.school_id)
    except BulkImportError as e:
        raise to_http_error(e) from e
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="import-errors-{job_id}.csv"'
        },
    )


@router.post(
    "/{job_id}/cancel",
    summary="Request cancellation of a job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobStatus,
)
async def cancel_job(
    job_id: str,
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> JobStatus:
    """A queued job fails at once; a running job stops before its next batch."""
    try:
        job = job_ledger.request_cancel(db, job_id, tenant.school_id)
        db.commit()
    except BulkImportError as e:
        raise to_http_error(e) from e
    return serialize_job(job_ledger.summarize_job(job), None)
