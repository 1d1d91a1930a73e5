"""Database models package."""
from app.db.models.import_job import ImportJob, ImportJobError, ImportStatus
from app.db.models.school import (
    AcademicSession,
    AssessmentType,
    ClassArm,
    ClassArmSubject,
    Level,
    School,
    Subject,
    Term,
)
from app.db.models.student import AssessmentScore, ClassArmStudent, Student

__all__ = [
    "AcademicSession",
    "AssessmentScore",
    "AssessmentType",
    "ClassArm",
    "ClassArmStudent",
    "ClassArmSubject",
    "ImportJob",
    "ImportJobError",
    "ImportStatus",
    "Level",
    "School",
    "Student",
    "Subject",
    "Term",
]
