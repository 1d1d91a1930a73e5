"""Students, enrolments and assessment scores written by imports."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import DateTime

from app.db.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(36), ForeignKey("schools.id"), nullable=False, index=True)
    student_no = Column(String(32), nullable=False)
    admission_no = Column(String(64))
    first_name = Column(String(128), nullable=False)
    last_name = Column(String(128), nullable=False)
    gender = Column(String(8), nullable=False)
    date_of_birth = Column(Date)
    email = Column(String(255))
    phone = Column(String(32))
    state_of_origin = Column(String(64))
    admission_date = Column(Date)
    guardian_first_name = Column(String(128))
    guardian_last_name = Column(String(128))
    guardian_email = Column(String(255))
    guardian_phone = Column(String(32))
    guardian_relationship = Column(String(64))
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("school_id", "student_no"),
        UniqueConstraint("school_id", "admission_no"),
        Index("ix_students_school_email_lower", school_id, func.lower(email)),
    )


class ClassArmStudent(Base):
    __tablename__ = "class_arm_students"

    id = Column(Integer, primary_key=True)
    class_arm_id = Column(String(36), ForeignKey("class_arms.id"), nullable=False)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime(timezone=True))


class AssessmentScore(Base):
    __tablename__ = "assessment_scores"

    id = Column(String(36), primary_key=True, default=_uuid)
    class_arm_subject_id = Column(
        String(36), ForeignKey("class_arm_subjects.id"), nullable=False
    )
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False)
    term_id = Column(String(36), ForeignKey("terms.id"), nullable=False)
    assessment_type_id = Column(String(36), ForeignKey("assessment_types.id"))
    name = Column(String(64), nullable=False)
    score = Column(Float, nullable=False)
    max_score = Column(Integer)
    is_exam = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("class_arm_subject_id", "student_id", "term_id", "name"),
    )
