"""Student roster import: row mapping, validation, duplicate keys, persistence."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.db.models import ClassArmStudent, Student
from app.services import cross_reference
from app.services.importers.base import (
    FORMAT,
    MISSING,
    ImportScope,
    RecordImporter,
    RowParseError,
    register_importer,
)
from app.services.tabular import SourceRow, coerce_date_string, coerce_text
from app.services.validators import (
    GENDERS,
    is_valid_date,
    is_valid_email,
    is_valid_phone,
    normalize_gender,
    parse_iso_date,
)

logger = logging.getLogger(__name__)

STUDENTS = "students"

# Record field -> accepted CSV header spellings
HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "first_name": ("firstName", "First Name", "first_name"),
    "last_name": ("lastName", "Last Name", "last_name", "Surname"),
    "gender": ("gender", "Sex"),
    "class_name": ("className", "Class Name", "class_name", "Class"),
    "class_arm_id": ("classArmId", "Class Arm ID", "class_arm_id"),
    "date_of_birth": ("dateOfBirth", "Date of Birth", "date_of_birth", "DOB"),
    "email": ("email", "Email Address"),
    "phone": ("phone", "Phone Number"),
    "state_of_origin": ("stateOfOrigin", "State of Origin", "state_of_origin"),
    "admission_no": ("admissionNo", "Admission No", "Admission Number", "admission_no"),
    "admission_date": ("admissionDate", "Admission Date", "admission_date"),
    "guardian_first_name": ("guardianFirstName", "Guardian First Name"),
    "guardian_last_name": ("guardianLastName", "Guardian Last Name"),
    "guardian_email": ("guardianEmail", "Guardian Email"),
    "guardian_phone": ("guardianPhone", "Guardian Phone"),
    "guardian_relationship": ("guardianRelationship", "Guardian Relationship"),
}

# Column order of the XLSX roster template
POSITIONAL_FIELDS = (
    "first_name",
    "last_name",
    "gender",
    "class_name",
    "date_of_birth",
    "email",
    "phone",
    "admission_date",
    "guardian_first_name",
    "guardian_last_name",
    "guardian_email",
    "guardian_phone",
    "guardian_relationship",
    "admission_no",
    "state_of_origin",
)

# Headers written into the CSV template; each is one of the accepted aliases
TEMPLATE_HEADERS = tuple(HEADER_ALIASES[name][0] for name in POSITIONAL_FIELDS)

DATE_FIELDS = ("date_of_birth", "admission_date")
REQUIRED_FIELDS = ("first_name", "last_name", "gender")

_HEADER_NOISE_RE = re.compile(r"[\s_\-]")


def normalize_header(header: str) -> str:
    return _HEADER_NOISE_RE.sub("", header or "").lower()


def check_fields(record: dict[str, Any]) -> RowParseError | None:
    """Structural and format checks shared by the parser and the validator."""
    missing = [name for name in REQUIRED_FIELDS if not record.get(name)]
    if not record.get("class_name") and not record.get("class_arm_id"):
        missing.append("class_name")
    if missing:
        return RowParseError(
            f"Missing required fields: {', '.join(missing)}", field=missing[0], kind=MISSING
        )
    if record["gender"] not in GENDERS:
        return RowParseError(
            f"Invalid gender value: {record['gender']}. Must be MALE or FEMALE",
            field="gender",
            kind=FORMAT,
            value=record["gender"],
        )
    for name in ("email", "guardian_email"):
        if record.get(name) and not is_valid_email(record[name]):
            return RowParseError(
                f"Invalid {name} format: {record[name]}", field=name, kind=FORMAT, value=record[name]
            )
    for name in ("phone", "guardian_phone"):
        if record.get(name) and not is_valid_phone(record[name]):
            return RowParseError(
                f"Invalid {name} format: {record[name]}", field=name, kind=FORMAT, value=record[name]
            )
    for name in DATE_FIELDS:
        if record.get(name) and not is_valid_date(record[name]):
            return RowParseError(
                f"Invalid {name} date format: {record[name]}. Use YYYY-MM-DD format",
                field=name,
                kind=FORMAT,
                value=record[name],
            )
    return None


@register_importer
class StudentImporter(RecordImporter):
    import_type = STUDENTS
    entity_label = "student"

    # Parsing

    def map_columns(self, header: list[str]) -> dict[str, int]:
        """Field -> column index, tolerant to header casing and spacing."""
        positions = {normalize_header(h): index for index, h in enumerate(header)}
        columns: dict[str, int] = {}
        for name, aliases in HEADER_ALIASES.items():
            for alias in aliases:
                index = positions.get(normalize_header(alias))
                if index is not None:
                    columns[name] = index
                    break
        return columns

    def parse_delimited_row(self, row: SourceRow, columns: dict[str, int]) -> dict[str, Any]:
        raw = {name: row.cell(index) for name, index in columns.items()}
        return self._build_record(row.number, raw)

    def parse_positional_row(self, row: SourceRow) -> dict[str, Any]:
        raw = {name: row.cell(index) for index, name in enumerate(POSITIONAL_FIELDS)}
        return self._build_record(row.number, raw)

    def _build_record(self, row_number: int, raw: dict[str, Any]) -> dict[str, Any]:
        record: dict[str, Any] = {"row_number": row_number}
        for name in HEADER_ALIASES:
            value = raw.get(name)
            if name in DATE_FIELDS:
                record[name] = coerce_date_string(value)
            elif name == "gender":
                record[name] = normalize_gender(value)
            else:
                record[name] = coerce_text(value)
        problem = check_fields(record)
        if problem is not None:
            raise problem
        return record

    # Processing

    def validate(self, session: Session, record: dict, scope: ImportScope) -> str | None:
        problem = check_fields(record)
        if problem is not None:
            return str(problem)

        class_name = record.get("class_name")
        if class_name:
            resolution = scope.cache.get(("class", class_name.lower()))
            if resolution is None:
                resolution = cross_reference.resolve_class_arm(
                    session, scope.school_id, class_name
                )
                scope.cache[("class", class_name.lower())] = resolution
            if resolution.ambiguous:
                return f'Class name "{class_name}" matches {len(resolution.matches)} classes'
            if not resolution.found:
                available = ", ".join(resolution.alternatives) or "none"
                return f'Invalid class name: "{class_name}". Available classes: {available}'
            record["class_arm_id"] = resolution.id
        elif not cross_reference.class_arm_exists(
            session, scope.school_id, record["class_arm_id"]
        ):
            return f"Invalid classArmId: {record['class_arm_id']} not found for this school"
        return None

    def find_existing(self, session: Session, record: dict, scope: ImportScope) -> Student | None:
        query = select(Student).where(
            Student.school_id == scope.school_id, Student.deleted_at.is_(None)
        )
        if record.get("admission_no"):
            query = query.where(Student.admission_no == record["admission_no"])
        elif record.get("email"):
            query = query.where(func.lower(Student.email) == record["email"].lower())
        else:
            dob = parse_iso_date(record["date_of_birth"]) if record.get("date_of_birth") else None
            query = query.join(
                ClassArmStudent, ClassArmStudent.student_id == Student.id
            ).where(
                ClassArmStudent.class_arm_id == record["class_arm_id"],
                ClassArmStudent.is_active.is_(True),
                func.lower(Student.first_name) == record["first_name"].lower(),
                func.lower(Student.last_name) == record["last_name"].lower(),
                Student.date_of_birth == dob if dob else Student.date_of_birth.is_(None),
            )
        return session.scalars(query).first()

    def duplicate_reason(self, record: dict) -> str:
        if record.get("admission_no"):
            key = f"admission number '{record['admission_no']}'"
        elif record.get("email"):
            key = f"email '{record['email']}'"
        else:
            key = f"name '{record['first_name']} {record['last_name']}' in this class"
        return f"duplicate: a student with {key} already exists"

    def _apply_fields(self, student: Student, record: dict) -> None:
        student.first_name = record["first_name"]
        student.last_name = record["last_name"]
        student.gender = record["gender"]
        for name in (
            "email",
            "phone",
            "state_of_origin",
            "guardian_first_name",
            "guardian_last_name",
            "guardian_email",
            "guardian_phone",
            "guardian_relationship",
        ):
            if record.get(name) is not None:
                setattr(student, name, record[name])
        for name in DATE_FIELDS:
            if record.get(name):
                setattr(student, name, parse_iso_date(record[name]))

    def create(self, session: Session, record: dict, scope: ImportScope) -> str:
        student = Student(
            school_id=scope.school_id,
            admission_no=record.get("admission_no"),
            student_no=record.get("admission_no") or f"STU{uuid.uuid4().hex[:10].upper()}",
        )
        self._apply_fields(student, record)
        session.add(student)
        session.flush()
        session.add(ClassArmStudent(class_arm_id=record["class_arm_id"], student_id=student.id))
        session.flush()
        return student.id

    def update(self, session: Session, existing: Student, record: dict, scope: ImportScope) -> str:
        self._apply_fields(existing, record)
        enrolled = session.scalar(
            select(ClassArmStudent.id).where(
                ClassArmStudent.student_id == existing.id,
                ClassArmStudent.class_arm_id == record["class_arm_id"],
                ClassArmStudent.is_active.is_(True),
            )
        )
        if enrolled is None:
            session.execute(
                update(ClassArmStudent)
                .where(ClassArmStudent.student_id == existing.id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            session.add(
                ClassArmStudent(class_arm_id=record["class_arm_id"], student_id=existing.id)
            )
        session.flush()
        return existing.id
