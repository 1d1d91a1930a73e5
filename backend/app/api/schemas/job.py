"""Import job status payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class JobError(BaseModel):
    row: int = Field(..., description="1-based record position in the job; 0 for job-level errors")
    source_row: int | None = Field(None, description="Row in the uploaded file")
    field: str | None = None
    message: str
    record: dict[str, Any] | None = None


class JobStatus(BaseModel):
    job_id: str
    import_type: str
    file_name: str
    status: str = Field(..., description="PENDING|PROCESSING|COMPLETED|FAILED")
    total_records: int
    processed: int
    successful: int
    failed: int
    percentage: int = Field(..., description="0-100, rounded")
    message: str | None = None
    errors_dropped: int = 0
    error_message: str | None = None
    cancel_requested: bool = False
    options: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion: datetime | None = None
    errors: list[JobError] | None = None
