"""Assessment score template download and bulk upload endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.dependencies.db import get_session
from app.api.dependencies.tasks import get_dispatcher
from app.api.dependencies.tenant import TenantContext, get_tenant
from app.api.routers.job_helpers import to_http_error
from app.api.schemas.imports import SubmissionResponse
from app.core.exceptions import BulkImportError
from app.services import import_intake
from app.services.assessment_templates import generate_score_template
from app.services.batch_scheduler import Dispatcher
from app.services.file_validation import XLSX_MEDIA_TYPE

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/template", summary="Download a score-entry template")
async def download_template(
    subject: str = Query(..., min_length=1),
    term: str = Query(..., min_length=1),
    session: str = Query(..., min_length=1, description="Academic year, e.g. 2024/2025"),
    level: str = Query(..., min_length=1),
    class_arm: str = Query(..., min_length=1),
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
) -> Response:
    """Workbook pre-filled with the class roster and any scores already recorded."""
    try:
        content, file_name = generate_score_template(
            db,
            tenant.school_id,
            tenant.user_id,
            subject=subject,
            term=term,
            session_name=session,
            level=level,
            class_arm=class_arm,
        )
        db.commit()
    except BulkImportError as e:
        raise to_http_error(e) from e
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.post(
    "",
    summary="Start an assessment score import",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionResponse,
)
async def upload_scores(
    file: UploadFile = File(...),
    term_id: str | None = Form(None),
    skip_duplicates: bool | None = Form(None),
    update_existing: bool | None = Form(None),
    batch_size: int | None = Form(None),
    tenant: TenantContext = Depends(get_tenant),
    db: Session = Depends(get_session),
    dispatch: Dispatcher = Depends(get_dispatcher),
) -> SubmissionResponse:
    """Read the template's embedded context, then queue one record per score cell."""
    try:
        content = await file.read()
        result = import_intake.submit_assessment_scores(
            db,
            school_id=tenant.school_id,
            user_id=tenant.user_id,
            content=content,
            file_name=file.filename or "",
            media_type=file.content_type,
            declared_size=file.size,
            term_id=term_id or None,
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
        logger.error(f"Unexpected error queueing score import: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from e
