"""Assessment score import: one record per non-empty score cell of a template."""

from __future__ import annotations

import logging
import math

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import AssessmentScore, ClassArmStudent, Student
from app.services.importers.base import ImportScope, RecordImporter, register_importer

logger = logging.getLogger(__name__)

ASSESSMENT_SCORES = "assessment_scores"


def parse_score(value) -> float | None:
    """Finite numeric value of a score cell, or None when it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        score = float(value)
    else:
        try:
            score = float(str(value).strip())
        except (TypeError, ValueError):
            return None
    return score if math.isfinite(score) else None


@register_importer
class AssessmentScoreImporter(RecordImporter):
    import_type = ASSESSMENT_SCORES
    entity_label = "assessment score"
    # Re-uploading a corrected sheet is the normal workflow
    default_skip_duplicates = False
    default_update_existing = True

    def _structure(self, record: dict, scope: ImportScope) -> dict | None:
        wanted = (record.get("assessment_name") or "").strip().lower()
        for structure in scope.context.get("assessment_structures", []):
            if structure["name"].strip().lower() == wanted:
                return structure
        return None

    def _student_id(self, session: Session, student_no: str, scope: ImportScope) -> str | None:
        key = ("student", student_no)
        if key not in scope.cache:
            scope.cache[key] = session.scalar(
                select(Student.id).where(
                    Student.school_id == scope.school_id,
                    Student.student_no == student_no,
                    Student.deleted_at.is_(None),
                )
            )
        return scope.cache[key]

    def validate(self, session: Session, record: dict, scope: ImportScope) -> str | None:
        student_no = record.get("student_no")
        if not student_no:
            return "Student number is required"

        structure = self._structure(record, scope)
        if structure is None:
            names = ", ".join(s["name"] for s in scope.context.get("assessment_structures", []))
            return (
                f"Assessment '{record.get('assessment_name')}' is not part of this template. "
                f"Available: {names or 'none'}"
            )

        score = parse_score(record.get("score"))
        if score is None:
            return f"Score for {structure['name']} must be a number, got '{record.get('score')}'"
        if score < 0 or score > structure["max_score"]:
            return (
                f"Score {score:g} for {structure['name']} is out of range "
                f"(0 - {structure['max_score']})"
            )

        student_id = self._student_id(session, student_no, scope)
        if student_id is None:
            return f"Student with number '{student_no}' not found"
        enrolled = session.scalar(
            select(ClassArmStudent.id).where(
                ClassArmStudent.student_id == student_id,
                ClassArmStudent.class_arm_id == scope.context["class_arm_id"],
                ClassArmStudent.is_active.is_(True),
                ClassArmStudent.deleted_at.is_(None),
            )
        )
        if enrolled is None:
            return f"Student '{student_no}' is not enrolled in {scope.context.get('class_arm', 'this class')}"

        record["student_id"] = student_id
        record["score"] = score
        record["max_score"] = structure["max_score"]
        record["is_exam"] = bool(structure.get("is_exam"))
        record["assessment_type_id"] = structure.get("id")
        record["assessment_name"] = structure["name"]
        return None

    def find_existing(
        self, session: Session, record: dict, scope: ImportScope
    ) -> AssessmentScore | None:
        # Soft-deleted rows still hold the unique key, so they are matched too.
        return session.scalars(
            select(AssessmentScore).where(
                AssessmentScore.class_arm_subject_id == scope.context["class_arm_subject_id"],
                AssessmentScore.student_id == record["student_id"],
                AssessmentScore.term_id == scope.context["term_id"],
                AssessmentScore.name == record["assessment_name"],
            )
        ).first()

    def duplicate_reason(self, record: dict) -> str:
        return (
            f"duplicate: {record['assessment_name']} score already recorded "
            f"for student '{record['student_no']}'"
        )

    def create(self, session: Session, record: dict, scope: ImportScope) -> str:
        score = AssessmentScore(
            class_arm_subject_id=scope.context["class_arm_subject_id"],
            student_id=record["student_id"],
            term_id=scope.context["term_id"],
            assessment_type_id=record.get("assessment_type_id"),
            name=record["assessment_name"],
            score=record["score"],
            max_score=record["max_score"],
            is_exam=record["is_exam"],
        )
        session.add(score)
        session.flush()
        return score.id

    def update(
        self, session: Session, existing: AssessmentScore, record: dict, scope: ImportScope
    ) -> str:
        existing.score = record["score"]
        existing.max_score = record["max_score"]
        existing.is_exam = record["is_exam"]
        existing.assessment_type_id = record.get("assessment_type_id")
        existing.deleted_at = None
        session.flush()
        return existing.id
