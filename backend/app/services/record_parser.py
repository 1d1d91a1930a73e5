"""Turn an uploaded roster into candidate records plus row-level parse errors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from app.services.file_validation import DELIMITED
from app.services.importers.base import FORMAT, INVALID, MISSING, OTHER, RowParseError
from app.services.tabular import SourceFormatError, SourceRow, read_source_rows

logger = logging.getLogger(__name__)

_GROUPS = (
    (MISSING, "Missing required fields", "Fill in every required column for these rows."),
    (FORMAT, "Format errors", "Check dates (YYYY-MM-DD), emails, phone numbers and gender (MALE/FEMALE)."),
    (INVALID, "Invalid values", "Correct the values so they match existing school data."),
    (OTHER, "Other errors", "Review these rows and try again."),
)


@dataclass
class ParseResult:
    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def parse_error(
    row: int, message: str, field_name: str | None = None, value: Any = None, kind: str = OTHER
) -> dict[str, Any]:
    return {"row": row, "field": field_name, "error": message, "value": value, "kind": kind}


def _snapshot(row: SourceRow) -> list[Any]:
    return [
        cell if cell is None or isinstance(cell, (str, int, float, bool)) else str(cell)
        for cell in row.cells
    ]


def parse_upload(content: bytes, kind: str, importer) -> ParseResult:
    """Parse every non-blank row; a bad row is recorded and parsing moves on."""
    result = ParseResult()
    try:
        table = read_source_rows(content, kind)
    except SourceFormatError as e:
        result.errors.append(parse_error(0, str(e)))
        return result

    columns = importer.map_columns(table.header) if kind == DELIMITED else None
    for row in table.rows:
        try:
            if columns is not None:
                record = importer.parse_delimited_row(row, columns)
            else:
                record = importer.parse_positional_row(row)
        except RowParseError as e:
            value = e.value if e.value is not None else _snapshot(row)
            result.errors.append(parse_error(row.number, str(e), e.field, value, e.kind))
            continue
        result.records.append(record)

    logger.info(
        f"Parsed {len(result.records)} records with {len(result.errors)} errors "
        f"({len(table.rows)} non-blank rows)"
    )
    return result


def _format_rows(rows: list[int]) -> str:
    shown = ", ".join(str(r) for r in rows[:20])
    if len(rows) > 20:
        shown += f" and {len(rows) - 20} more"
    return shown


def build_error_summary(errors: list[dict[str, Any]]) -> str:
    """Grouped, human-readable description of every parse problem."""
    if not errors:
        return ""
    lines = [f"Found {len(errors)} problem(s) in the uploaded file:"]
    for kind, title, hint in _GROUPS:
        group = [e for e in errors if e.get("kind", OTHER) == kind]
        if not group:
            continue
        lines.append("")
        lines.append(f"{title} ({len(group)}):")
        for error in group[:50]:
            where = f"Row {error['row']}" if error["row"] else "File"
            lines.append(f"  - {where}: {error['error']}")
        if len(group) > 50:
            lines.append(f"  ... {len(group) - 50} more")
        rows = sorted({e["row"] for e in group if e["row"]})
        if rows:
            lines.append(f"  Affected rows: {_format_rows(rows)}")
        lines.append(f"  Fix: {hint}")
    return "\n".join(lines)
