"""Context envelope stored inside generated score templates.

The envelope is compact JSON written into plain cells of a far-away column.
Identical copies sit at several deterministic rows so that a later upload can
be interpreted even after users insert rows or clear a few cells. It is
inconspicuous, not secret.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

TEMPLATE_VERSION = 1
METADATA_COLUMN = 100
RELATIVE_OFFSETS = (100, 200, 300)
FALLBACK_ROWS = tuple(range(500, 1001, 100))
SWEEP_SPAN = 2000
DATA_COLUMNS = 5
MAX_CELL_CHARS = 32767  # Excel's per-cell text limit


class AssessmentStructure(BaseModel):
    id: str | None = None
    name: str
    max_score: int = Field(..., gt=0)
    is_exam: bool = False


class TemplateMetadata(BaseModel):
    version: int = TEMPLATE_VERSION
    school_id: str
    class_arm_id: str
    class_arm_subject_id: str
    subject_id: str
    term_id: str
    subject: str
    term: str
    session: str
    level: str
    class_arm: str
    header_row: int = 4
    assessment_structures: list[AssessmentStructure]
    generated_at: datetime
    generated_by: str


def serialize_metadata(metadata: TemplateMetadata) -> str:
    text = json.dumps(
        metadata.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )
    if len(text) > MAX_CELL_CHARS:
        raise ValueError(
            f"Template metadata is {len(text)} characters; a cell holds at most {MAX_CELL_CHARS}"
        )
    return text


def parse_metadata(text) -> TemplateMetadata | None:
    """Return the envelope if ``text`` is a well-formed payload of this version."""
    if not isinstance(text, str) or not text.strip():
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("version") != TEMPLATE_VERSION:
        return None
    try:
        return TemplateMetadata.model_validate(data)
    except ValidationError:
        return None


def last_data_row(worksheet: Worksheet) -> int:
    """Last row with a value in any of the first few columns (0 for an empty sheet)."""
    last = 0
    for number, values in enumerate(
        worksheet.iter_rows(min_col=1, max_col=DATA_COLUMNS, values_only=True), start=1
    ):
        if any(v is not None and str(v).strip() for v in values):
            last = number
    return last


def _primary_rows(last: int) -> list[int]:
    return [last + offset for offset in RELATIVE_OFFSETS]


def embed_metadata(
    worksheet: Worksheet, metadata: TemplateMetadata, last_row: int | None = None
) -> list[int]:
    """Write identical copies of the envelope; returns the rows used."""
    text = serialize_metadata(metadata)
    last = last_data_row(worksheet) if last_row is None else last_row
    rows = _primary_rows(last) + [r for r in FALLBACK_ROWS if r > last + RELATIVE_OFFSETS[-1]]
    for row in rows:
        worksheet.cell(row=row, column=METADATA_COLUMN, value=text)
    worksheet.column_dimensions[get_column_letter(METADATA_COLUMN)].hidden = True
    logger.debug(f"Embedded template metadata at rows {rows}")
    return rows


def _cell_text(worksheet: Worksheet, row: int):
    return worksheet.cell(row=row, column=METADATA_COLUMN).value


def extract_metadata(worksheet: Worksheet) -> TemplateMetadata | None:
    """First parseable copy in search order, or None when every location fails."""
    last = last_data_row(worksheet)
    candidates = _primary_rows(last) + [r for r in FALLBACK_ROWS if r > last]
    for row in candidates:
        metadata = parse_metadata(_cell_text(worksheet, row))
        if metadata is not None:
            logger.debug(f"Template metadata found at row {row}")
            return metadata

    # Bounded sweep for copies moved by edits we did not anticipate
    for offset, (value,) in enumerate(
        worksheet.iter_rows(
            min_row=last + 1,
            max_row=last + SWEEP_SPAN,
            min_col=METADATA_COLUMN,
            max_col=METADATA_COLUMN,
            values_only=True,
        ),
        start=1,
    ):
        metadata = parse_metadata(value)
        if metadata is not None:
            logger.debug(f"Template metadata found by sweep at row {last + offset}")
            return metadata
    return None
