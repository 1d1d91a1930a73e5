"""Import options and submission payloads."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.config import get_settings


class ImportOptions(BaseModel):
    """Options snapshot stored on the job; immutable once the job starts."""

    skip_duplicates: bool = Field(True, description="Report existing records as duplicates")
    update_existing: bool = Field(False, description="Update existing records in place")
    batch_size: int = Field(
        default_factory=lambda: get_settings().import_default_batch_size,
        description="Records per batch (progress granularity)",
    )

    model_config = {"frozen": True}

    @field_validator("batch_size")
    @classmethod
    def batch_size_in_range(cls, v: int) -> int:
        settings = get_settings()
        if not settings.import_min_batch_size <= v <= settings.import_max_batch_size:
            raise ValueError(
                f"batch_size must be between {settings.import_min_batch_size} "
                f"and {settings.import_max_batch_size}"
            )
        return v

    @model_validator(mode="after")
    def duplicate_flags_exclusive(self) -> "ImportOptions":
        if self.skip_duplicates and self.update_existing:
            raise ValueError("skip_duplicates and update_existing cannot both be enabled")
        return self


class ProgressSnapshot(BaseModel):
    total_records: int
    processed: int = 0
    successful: int = 0
    failed: int = 0
    percentage: int = 0


class SubmissionResponse(BaseModel):
    job_id: str
    status: str = Field(..., description="Always PENDING on submission")
    progress: ProgressSnapshot
    submitted_at: datetime | None = None
