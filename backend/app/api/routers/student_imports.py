"""Student roster bulk import endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.dependencies.db import get_session
from app.api.dependencies.tasks import get_dispatcher
from app.api.dependencies.tenant import TenantContext, get_tenant
from app.api.routers.job_helpers import to_http_error
from app.api.schemas.imports import SubmissionResponse
from app.core.exceptions import BulkImportError
from app.services import import_intake
from app.services.batch_scheduler import Dispatcher
from app.services.file_validation import XLSX_MEDIA_TYPE

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/upload",
    summary="Start a student roster import",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
)
async def upload_students(
    file: UploadFile = File(...),
    skip_duplicates: bool | None = Form(None),
    update_existing: bool | None = Form(None),
    batch_size: int | None = Form(None),
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
    dispatch: Dispatcher = Depends(get_dispatcher),
) -> SubmissionResponse:
    """Validate and parse the roster, then queue it; returns the job id to poll."""
    try:
        content = await file.read()
        result = import_intake.submit_student_roster(
            db,
            school_id=tenant.school_id,
            user_id=tenant.user_id,
            content=content,
            file_name=file.filename or "",
            media_type=file.content_type,
            declared_size=file.size,
            skip_duplicates=skip_duplicates,
            update_existing=update_existing,
            batch_size=batch_size,
            dispatch=dispatch,
        )
        return SubmissionResponse(**result)
    except BulkImportError as e:
        raise to_http_error(e) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected error queueing student import: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from e


@router.get("/template", summary="Download the roster CSV template")
async def download_template(
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> Response:
    content = import_intake.student_roster_csv_template(db, tenant.school_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="student_import_template.csv"'},
    )


@router.get("/template/xlsx", summary="Download the roster XLSX template")
async def download_xlsx_template(
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> Response:
    """Columns in the order XLSX rosters are read; a second sheet lists valid classes."""
    content = import_intake.student_roster_xlsx_template(db, tenant.school_id)
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="student_import_template.xlsx"'},
    )


@router.get(
    "/class-arms",
    summary="Class names accepted in the className column",
    response_model=list[str],
)
async def class_arms(
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> list[str]:
    return import_intake.list_class_names(db, tenant.school_id)
