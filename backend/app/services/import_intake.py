"""Synchronous half of an import: validate, parse, reject or queue."""

from __future__ import annotations

import csv
import io
import logging
from itertools import zip_longest
from typing import Any

import openpyxl
from sqlalchemy.orm import Session

from app.core.exceptions import FileRejectedError, ParseRejectedError
from app.services import cross_reference
from app.services.assessment_templates import read_score_upload
from app.services.batch_scheduler import Dispatcher, submit_import
from app.services.file_validation import SPREADSHEET, validate_upload
from app.services.importers import get_importer
from app.services.importers.assessment_scores import ASSESSMENT_SCORES
from app.services.importers.base import MISSING
from app.services.importers.students import POSITIONAL_FIELDS, STUDENTS, TEMPLATE_HEADERS
from app.services.record_parser import build_error_summary, parse_error, parse_upload
from app.services.validators import GENDERS

logger = logging.getLogger(__name__)

SAMPLE_CLASS_NAME = "JSS 1 A"


def _reject_parse_errors(errors: list[dict[str, Any]]) -> None:
    if errors:
        raise ParseRejectedError(errors, build_error_summary(errors))


def _reject_empty(records: list[dict[str, Any]], message: str) -> None:
    if not records:
        _reject_parse_errors([parse_error(0, message, kind=MISSING)])


def _check_file(content: bytes, declared_size: int | None, media_type, file_name) -> str:
    result = validate_upload(content, declared_size, media_type, file_name)
    if not result.is_valid:
        logger.info(f"Rejected upload {file_name!r}: {result.errors}")
        raise FileRejectedError(result.errors)
    return result.kind


def submit_student_roster(
    session: Session,
    *,
    school_id: str,
    user_id: str,
    content: bytes,
    file_name: str,
    media_type: str | None,
    declared_size: int | None = None,
    skip_duplicates: bool | None = None,
    update_existing: bool | None = None,
    batch_size: int | None = None,
    dispatch: Dispatcher | None = None,
) -> dict[str, Any]:
    importer = get_importer(STUDENTS)
    options = importer.build_options(skip_duplicates, update_existing, batch_size)
    kind = _check_file(content, declared_size, media_type, file_name)

    parsed = parse_upload(content, kind, importer)
    _reject_parse_errors(parsed.errors)
    _reject_empty(parsed.records, "File contains no student records")

    return submit_import(
        session,
        import_type=STUDENTS,
        school_id=school_id,
        user_id=user_id,
        file_name=file_name,
        file_size=max(declared_size or 0, len(content)),
        records=parsed.records,
        options=options,
        dispatch=dispatch,
    )


def submit_assessment_scores(
    session: Session,
    *,
    school_id: str,
    user_id: str,
    content: bytes,
    file_name: str,
    media_type: str | None,
    declared_size: int | None = None,
    term_id: str | None = None,
    skip_duplicates: bool | None = None,
    update_existing: bool | None = None,
    batch_size: int | None = None,
    dispatch: Dispatcher | None = None,
) -> dict[str, Any]:
    importer = get_importer(ASSESSMENT_SCORES)
    options = importer.build_options(skip_duplicates, update_existing, batch_size)
    kind = _check_file(content, declared_size, media_type, file_name)
    if kind != SPREADSHEET:
        raise FileRejectedError(["Assessment scores must be uploaded as an .xlsx template"])

    upload = read_score_upload(session, content, school_id, term_id)
    _reject_parse_errors(upload.errors)
    _reject_empty(upload.records, "Template contains no scores")

    return submit_import(
        session,
        import_type=ASSESSMENT_SCORES,
        school_id=school_id,
        user_id=user_id,
        file_name=file_name,
        file_size=max(declared_size or 0, len(content)),
        records=upload.records,
        options=options,
        context=upload.context,
        dispatch=dispatch,
    )


def list_class_names(session: Session, school_id: str) -> list[str]:
    return cross_reference.class_arm_names(session, school_id)


def _sample_student(names: list[str]) -> list[Any]:
    """One sample student in a real class of the school, in template column order."""
    sample = {
        "first_name": "John",
        "last_name": "Doe",
        "gender": "MALE",
        "class_name": names[0] if names else SAMPLE_CLASS_NAME,
        "date_of_birth": "2010-05-15",
        "email": "john.doe@example.com",
        "phone": "+2348012345678",
        "admission_date": "2024-09-01",
        "guardian_first_name": "Jane",
        "guardian_last_name": "Doe",
        "guardian_email": "jane.doe@example.com",
        "guardian_phone": "+2348087654321",
        "guardian_relationship": "Mother",
        "admission_no": None,
        "state_of_origin": "Lagos",
    }
    return [sample[name] for name in POSITIONAL_FIELDS]


def student_roster_csv_template(session: Session, school_id: str) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(TEMPLATE_HEADERS)
    writer.writerow(_sample_student(list_class_names(session, school_id)))
    return buffer.getvalue()


def student_roster_xlsx_template(session: Session, school_id: str) -> bytes:
    """Workbook whose first sheet has the column order the XLSX parser reads by position.

    A second sheet lists the accepted class names and genders.
    """
    names = list_class_names(session, school_id)
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Students"
    sheet.append(list(TEMPLATE_HEADERS))
    sheet.append(_sample_student(names))

    options = workbook.create_sheet("Options")
    options.append(["className", "gender"])
    for class_name, gender in zip_longest(names, GENDERS):
        options.append([class_name, gender])

    buffer = io.BytesIO()
    workbook.save(buffer)
    logger.info(f"Generated XLSX roster template for school {school_id}")
    return buffer.getvalue()
