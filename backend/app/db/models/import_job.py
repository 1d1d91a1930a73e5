"""Job ledger: one row per import attempt plus its append-only error list."""

import enum
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.db.base import Base, JSONType


class ImportStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.COMPLETED, ImportStatus.FAILED)


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    school_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    import_type = Column(String(32), nullable=False)
    file_name = Column(Text, nullable=False)
    file_size = Column(Integer, default=0)
    status = Column(String(32), nullable=False, default=ImportStatus.PENDING.value)
    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    successful_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)
    errors_dropped = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    options = Column(JSONType)
    cancel_requested_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class ImportJobError(Base):
    __tablename__ = "import_job_errors"

    id = Column(Integer, primary_key=True)
    job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    position = Column(Integer, nullable=False)
    row = Column(Integer, nullable=False, default=0)
    source_row = Column(Integer)
    field = Column(String(64))
    message = Column(Text, nullable=False)
    record = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_import_job_errors_job_position", job_id, position),)
