"""Contract every import instance (students, assessment scores) implements."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.api.schemas.imports import ImportOptions
from app.core.exceptions import InvalidImportOptionsError

MISSING = "missing"
FORMAT = "format"
INVALID = "invalid"
OTHER = "other"


class RowParseError(ValueError):
    """A single row could not be turned into a candidate record."""

    def __init__(
        self, message: str, field: str | None = None, kind: str = OTHER, value: Any = None
    ):
        super().__init__(message)
        self.field = field
        self.kind = kind
        self.value = value


@dataclass
class ImportScope:
    """Per-job state handed to importer hooks; never shared between jobs."""

    school_id: str
    context: dict[str, Any] = field(default_factory=dict)
    cache: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordOutcome:
    ordinal: int  # 1-based position of the record within the job
    record: dict[str, Any]
    success: bool
    entity_id: str | None = None
    error: str | None = None
    field: str | None = None

    @property
    def source_row(self) -> int | None:
        return self.record.get("row_number")


class RecordImporter(ABC):
    import_type: str
    entity_label: str
    default_skip_duplicates = True
    default_update_existing = False

    def build_options(
        self,
        skip_duplicates: bool | None = None,
        update_existing: bool | None = None,
        batch_size: int | None = None,
    ) -> ImportOptions:
        """Fill unset flags with this importer's defaults and validate the combination."""
        values: dict[str, Any] = {
            "skip_duplicates": self.default_skip_duplicates
            if skip_duplicates is None
            else skip_duplicates,
            "update_existing": self.default_update_existing
            if update_existing is None
            else update_existing,
        }
        # An explicit request for one duplicate policy switches the other default off.
        if update_existing and skip_duplicates is None:
            values["skip_duplicates"] = False
        if skip_duplicates and update_existing is None:
            values["update_existing"] = False
        if batch_size is not None:
            values["batch_size"] = batch_size
        try:
            return ImportOptions(**values)
        except ValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise InvalidImportOptionsError(messages) from e

    @abstractmethod
    def validate(self, session: Session, record: dict, scope: ImportScope) -> str | None:
        """Return a failure reason, or None when the record may be persisted."""

    @abstractmethod
    def find_existing(self, session: Session, record: dict, scope: ImportScope) -> Any | None:
        """Look up an entity with the same natural key."""

    @abstractmethod
    def duplicate_reason(self, record: dict) -> str:
        ...

    @abstractmethod
    def create(self, session: Session, record: dict, scope: ImportScope) -> str:
        ...

    @abstractmethod
    def update(self, session: Session, existing: Any, record: dict, scope: ImportScope) -> str:
        ...


_REGISTRY: dict[str, RecordImporter] = {}


def register_importer(cls: type[RecordImporter]) -> type[RecordImporter]:
    _REGISTRY[cls.import_type] = cls()
    return cls


def get_importer(import_type: str) -> RecordImporter:
    try:
        return _REGISTRY[import_type]
    except KeyError:
        raise ValueError(f"Unknown import type: {import_type}") from None
