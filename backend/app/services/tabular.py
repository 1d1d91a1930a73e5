"""Normalize CSV and XLSX uploads into one row representation."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import openpyxl
from openpyxl.utils.datetime import from_excel

from app.services.file_validation import DELIMITED, SPREADSHEET
from app.services.validators import is_blank

logger = logging.getLogger(__name__)


class SourceFormatError(ValueError):
    """The file as a whole cannot be read as a table."""


@dataclass
class SourceRow:
    number: int  # physical row in the file; the header is row 1
    cells: list[Any]

    def cell(self, index: int) -> Any:
        return self.cells[index] if index < len(self.cells) else None


@dataclass
class SourceTable:
    header: list[str]
    rows: list[SourceRow] = field(default_factory=list)


def _clean_cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def is_blank_row(cells: list[Any]) -> bool:
    return all(is_blank(cell) for cell in cells)


def _build_table(raw_rows: list[tuple[int, list[Any]]]) -> SourceTable:
    if not raw_rows:
        raise SourceFormatError("File appears to be empty")
    header_number, header_cells = raw_rows[0]
    if header_number != 1 or is_blank_row(header_cells):
        raise SourceFormatError("File requires a header row in the first row")
    header = [str(cell) if cell is not None else "" for cell in header_cells]
    rows = [
        SourceRow(number=number, cells=cells)
        for number, cells in raw_rows[1:]
        if not is_blank_row(cells)
    ]
    return SourceTable(header=header, rows=rows)


def _read_delimited(content: bytes) -> SourceTable:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise SourceFormatError(f"File encoding error: {e}") from e
    try:
        reader = csv.reader(io.StringIO(text, newline=""))
        raw_rows = [
            (number, [_clean_cell(cell) for cell in row])
            for number, row in enumerate(reader, start=1)
        ]
    except csv.Error as e:
        raise SourceFormatError(f"CSV parsing error: {e}") from e
    return _build_table(raw_rows)


def _read_spreadsheet(content: bytes) -> SourceTable:
    try:
        workbook = openpyxl.load_workbook(
            io.BytesIO(content), read_only=True, data_only=True
        )
    except Exception as e:
        logger.warning(f"Unable to open workbook: {e}")
        raise SourceFormatError(f"Excel file parsing failed: {e}") from e
    try:
        if not workbook.worksheets:
            raise SourceFormatError("Workbook contains no worksheets")
        sheet = workbook.worksheets[0]
        raw_rows = [
            (number, [_clean_cell(cell) for cell in values])
            for number, values in enumerate(sheet.iter_rows(values_only=True), start=1)
        ]
    finally:
        workbook.close()
    return _build_table(raw_rows)


def read_source_rows(content: bytes, kind: str) -> SourceTable:
    """Return the header and the non-blank data rows of an upload."""
    if kind == DELIMITED:
        return _read_delimited(content)
    if kind == SPREADSHEET:
        return _read_spreadsheet(content)
    raise SourceFormatError(f"Unsupported file kind: {kind}")


def coerce_date_string(value: Any) -> str | None:
    """Render spreadsheet dates (datetime or Excel serial) as YYYY-MM-DD.

    Strings are returned untouched so format validation can report them.
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return from_excel(value).date().isoformat()
        except (ValueError, OverflowError, TypeError, AttributeError):
            return str(value)
    return str(value).strip()


def coerce_text(value: Any) -> str | None:
    if is_blank(value):
        return None
    return str(value).strip()
