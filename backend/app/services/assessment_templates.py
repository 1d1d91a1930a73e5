"""Generate score-entry workbooks and read them back as score records."""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import (
    ReferenceNotFoundError,
    TemplateNotRecognizedError,
    TemplateReferenceError,
    TemplateUnreadableError,
    TermLockedError,
)
from app.db.models import (
    AcademicSession,
    AssessmentScore,
    AssessmentType,
    ClassArm,
    ClassArmStudent,
    ClassArmSubject,
    School,
    Student,
    Subject,
    Term,
)
from app.services import cross_reference
from app.services.importers.assessment_scores import parse_score
from app.services.importers.base import FORMAT, MISSING
from app.services.record_parser import parse_error
from app.services.tabular import coerce_text
from app.services.template_metadata import (
    AssessmentStructure,
    TemplateMetadata,
    embed_metadata,
    extract_metadata,
)
from app.services.validators import is_blank

logger = logging.getLogger(__name__)

HEADER_ROW = 4
FIXED_HEADERS = ("S/N", "Student Name", "Student Number")
TERM_LOCKED_MESSAGE = "Assessment scores for this term are locked and cannot be modified"

_SHEET_TITLE_RE = re.compile(r"[\[\]:*?/\\]")
_FILE_NAME_RE = re.compile(r"[^A-Za-z0-9]+")


@dataclass
class ScoreUpload:
    metadata: TemplateMetadata
    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)


def _assessment_structures(session: Session, school_id: str) -> list[AssessmentStructure]:
    types = session.scalars(
        select(AssessmentType)
        .where(AssessmentType.school_id == school_id, AssessmentType.deleted_at.is_(None))
        .order_by(AssessmentType.position, AssessmentType.name)
    ).all()
    return [
        AssessmentStructure(id=t.id, name=t.name, max_score=t.max_score, is_exam=t.is_exam)
        for t in types
    ]


def _enrolled_students(session: Session, class_arm_id: str) -> list[Student]:
    return list(
        session.scalars(
            select(Student)
            .join(ClassArmStudent, ClassArmStudent.student_id == Student.id)
            .where(
                ClassArmStudent.class_arm_id == class_arm_id,
                ClassArmStudent.is_active.is_(True),
                ClassArmStudent.deleted_at.is_(None),
                Student.deleted_at.is_(None),
            )
            .order_by(Student.student_no)
        )
    )


def _existing_scores(
    session: Session, class_arm_subject_id: str, term_id: str
) -> dict[tuple[str, str], float]:
    scores = session.scalars(
        select(AssessmentScore).where(
            AssessmentScore.class_arm_subject_id == class_arm_subject_id,
            AssessmentScore.term_id == term_id,
            AssessmentScore.deleted_at.is_(None),
        )
    )
    return {(s.student_id, s.name.lower()): s.score for s in scores}


def header_label(structure: AssessmentStructure) -> str:
    return f"{structure.name} (Max: {structure.max_score})"


def template_file_name(subject: str, class_label: str, term: str, session_name: str) -> str:
    parts = [_FILE_NAME_RE.sub("_", p).strip("_") for p in (subject, class_label, term, session_name)]
    return "_".join(p for p in parts if p) + ".xlsx"


def generate_score_template(
    session: Session,
    school_id: str,
    actor_id: str,
    *,
    subject: str,
    term: str,
    session_name: str,
    level: str,
    class_arm: str,
) -> tuple[bytes, str]:
    """Build the score sheet for one class arm and subject; returns (content, file name)."""
    academic_session = cross_reference.find_academic_session(session, school_id, session_name)
    term_row = cross_reference.find_term(session, academic_session, term)
    level_row = cross_reference.find_level(session, school_id, level)
    arm = cross_reference.find_class_arm(session, level_row, class_arm)
    subject_row = cross_reference.find_subject(session, school_id, subject)
    link = cross_reference.get_or_create_class_arm_subject(session, arm.id, subject_row.id)

    structures = _assessment_structures(session, school_id)
    if not structures:
        raise TemplateReferenceError("No assessment types are configured for this school")

    school = session.get(School, school_id)
    class_label = f"{level_row.name} {arm.name}"
    students = _enrolled_students(session, arm.id)
    scores = _existing_scores(session, link.id, term_row.id)

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = _SHEET_TITLE_RE.sub(" ", class_label)[:31] or "Scores"
    sheet.cell(row=1, column=1, value=school.name if school else "")
    sheet.cell(
        row=2,
        column=1,
        value=(
            f"Subject: {subject_row.name} | Class: {class_label} | "
            f"Term: {term_row.name} | Session: {academic_session.academic_year}"
        ),
    )
    headers = list(FIXED_HEADERS) + [header_label(s) for s in structures]
    for column, text in enumerate(headers, start=1):
        sheet.cell(row=HEADER_ROW, column=column, value=text)

    for index, student in enumerate(students, start=1):
        row = HEADER_ROW + index
        sheet.cell(row=row, column=1, value=index)
        sheet.cell(row=row, column=2, value=f"{student.last_name} {student.first_name}")
        sheet.cell(row=row, column=3, value=student.student_no)
        for offset, structure in enumerate(structures):
            existing = scores.get((student.id, structure.name.lower()))
            if existing is not None:
                sheet.cell(row=row, column=len(FIXED_HEADERS) + 1 + offset, value=existing)

    metadata = TemplateMetadata(
        school_id=school_id,
        class_arm_id=arm.id,
        class_arm_subject_id=link.id,
        subject_id=subject_row.id,
        term_id=term_row.id,
        subject=subject_row.name,
        term=term_row.name,
        session=academic_session.academic_year,
        level=level_row.name,
        class_arm=arm.name,
        header_row=HEADER_ROW,
        assessment_structures=structures,
        generated_at=datetime.now(timezone.utc),
        generated_by=actor_id,
    )
    embed_metadata(sheet, metadata, HEADER_ROW + len(students))

    buffer = io.BytesIO()
    workbook.save(buffer)
    logger.info(
        f"Generated score template for {class_label} / {subject_row.name} "
        f"({len(students)} students, {len(structures)} assessments)"
    )
    return buffer.getvalue(), template_file_name(
        subject_row.name, class_label, term_row.name, academic_session.academic_year
    )


def _check_references(session: Session, metadata: TemplateMetadata) -> None:
    """Every id the template points at must still exist."""
    arm = session.scalar(
        select(ClassArm.id).where(
            ClassArm.id == metadata.class_arm_id,
            ClassArm.school_id == metadata.school_id,
            ClassArm.deleted_at.is_(None),
        )
    )
    if arm is None:
        raise TemplateReferenceError(f"Class arm '{metadata.class_arm}' no longer exists")
    subject = session.scalar(
        select(Subject.id).where(
            Subject.id == metadata.subject_id,
            Subject.school_id == metadata.school_id,
            Subject.deleted_at.is_(None),
        )
    )
    if subject is None:
        raise TemplateReferenceError(f"Subject '{metadata.subject}' no longer exists")
    link = session.scalar(
        select(ClassArmSubject.id).where(
            ClassArmSubject.id == metadata.class_arm_subject_id,
            ClassArmSubject.class_arm_id == metadata.class_arm_id,
            ClassArmSubject.subject_id == metadata.subject_id,
        )
    )
    if link is None:
        raise TemplateReferenceError(
            f"Subject '{metadata.subject}' is no longer offered in {metadata.level} {metadata.class_arm}"
        )


def _resolve_term(
    session: Session, metadata: TemplateMetadata, school_id: str, term_id: str | None
) -> Term:
    """The term scores are written to; an explicit term id overrides the template's."""
    query = (
        select(Term)
        .join(AcademicSession, AcademicSession.id == Term.academic_session_id)
        .where(AcademicSession.school_id == school_id, Term.deleted_at.is_(None))
    )
    if term_id:
        term = session.scalars(query.where(Term.id == term_id)).first()
        if term is None:
            raise ReferenceNotFoundError("Term", term_id, [])
    else:
        term = session.scalars(query.where(Term.id == metadata.term_id)).first()
        if term is None:
            raise TemplateReferenceError(
                f"Term '{metadata.term}' of session '{metadata.session}' no longer exists"
            )
    if term.is_locked:
        raise TermLockedError(TERM_LOCKED_MESSAGE)
    return term


def _read_rows(sheet, metadata: TemplateMetadata) -> tuple[list[dict], list[dict]]:
    """One record per non-empty score cell; columns map to the embedded schema by position."""
    structures = metadata.assessment_structures
    first_score_column = len(FIXED_HEADERS)
    records: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    for row_number, values in enumerate(
        sheet.iter_rows(
            min_row=metadata.header_row + 1,
            max_col=first_score_column + len(structures),
            values_only=True,
        ),
        start=metadata.header_row + 1,
    ):
        values = list(values) + [None] * (first_score_column + len(structures) - len(values))
        if all(is_blank(v) for v in values):
            continue
        student_name = coerce_text(values[1])
        student_no = coerce_text(values[2])
        if not student_name or not student_no:
            errors.append(
                parse_error(
                    row_number,
                    "Missing student name or student number",
                    "student_no" if student_name else "student_name",
                    kind=MISSING,
                )
            )
            continue
        for offset, structure in enumerate(structures):
            value = values[first_score_column + offset]
            if is_blank(value):
                continue
            score = parse_score(value)
            if score is None:
                errors.append(
                    parse_error(
                        row_number,
                        f"Invalid score for {structure.name}: {value}",
                        structure.name,
                        value=str(value),
                        kind=FORMAT,
                    )
                )
                continue
            records.append(
                {
                    "row_number": row_number,
                    "student_no": student_no,
                    "student_name": student_name,
                    "assessment_name": structure.name,
                    "score": score,
                }
            )
    return records, errors


def read_score_upload(
    session: Session, content: bytes, school_id: str, term_id: str | None = None
) -> ScoreUpload:
    """Recover the template context and its score records.

    Raises before any record is examined when the workbook is unreadable, is
    not one of our templates, or points at data that has since gone away.
    """
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), data_only=True)
    except Exception as e:
        logger.warning(f"Unable to open score workbook: {e}")
        raise TemplateUnreadableError(f"Unable to read the uploaded workbook: {e}") from e
    if not workbook.worksheets:
        raise TemplateUnreadableError("The uploaded workbook has no worksheets")
    sheet = workbook.worksheets[0]

    metadata = extract_metadata(sheet)
    if metadata is None:
        raise TemplateNotRecognizedError(
            "Invalid template: metadata not found. Download a fresh template and try again"
        )
    if metadata.school_id != school_id:
        raise TemplateNotRecognizedError("Template was generated for a different school")

    _check_references(session, metadata)
    term = _resolve_term(session, metadata, school_id, term_id)

    records, errors = _read_rows(sheet, metadata)
    context = {
        "school_id": school_id,
        "class_arm_id": metadata.class_arm_id,
        "class_arm_subject_id": metadata.class_arm_subject_id,
        "subject_id": metadata.subject_id,
        "term_id": term.id,
        "class_arm": f"{metadata.level} {metadata.class_arm}",
        "subject": metadata.subject,
        "term": term.name,
        "assessment_structures": [s.model_dump() for s in metadata.assessment_structures],
    }
    logger.info(
        f"Read score template for {context['class_arm']} / {metadata.subject}: "
        f"{len(records)} scores, {len(errors)} errors"
    )
    return ScoreUpload(metadata=metadata, records=records, errors=errors, context=context)
