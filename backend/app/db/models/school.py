"""Tenant-scoped academic structure referenced by imports.

These tables belong to the wider school platform; only the columns the import
pipeline reads or writes are modelled here.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.db.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class School(Base):
    __tablename__ = "schools"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)


class AcademicSession(Base):
    __tablename__ = "academic_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(36), ForeignKey("schools.id"), nullable=False, index=True)
    academic_year = Column(String(32), nullable=False)
    is_current = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))


class Term(Base):
    __tablename__ = "terms"

    id = Column(String(36), primary_key=True, default=_uuid)
    academic_session_id = Column(
        String(36), ForeignKey("academic_sessions.id"), nullable=False, index=True
    )
    name = Column(String(64), nullable=False)
    is_locked = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True))

    academic_session = relationship(AcademicSession)


class Level(Base):
    __tablename__ = "levels"

    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(36), ForeignKey("schools.id"), nullable=False, index=True)
    name = Column(String(64), nullable=False)
    deleted_at = Column(DateTime(timezone=True))


class ClassArm(Base):
    __tablename__ = "class_arms"

    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(36), ForeignKey("schools.id"), nullable=False, index=True)
    level_id = Column(String(36), ForeignKey("levels.id"), nullable=False)
    academic_session_id = Column(String(36), ForeignKey("academic_sessions.id"))
    name = Column(String(64), nullable=False)
    deleted_at = Column(DateTime(timezone=True))

    level = relationship(Level)

    @property
    def display_name(self) -> str:
        """Label users type in roster files, e.g. "JSS 1 Blue"."""
        return f"{self.level.name} {self.name}"


class Subject(Base):
    __tablename__ = "subjects"

    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(36), ForeignKey("schools.id"), nullable=False, index=True)
    name = Column(String(128), nullable=False)
    deleted_at = Column(DateTime(timezone=True))


class ClassArmSubject(Base):
    __tablename__ = "class_arm_subjects"

    id = Column(String(36), primary_key=True, default=_uuid)
    class_arm_id = Column(String(36), ForeignKey("class_arms.id"), nullable=False)
    subject_id = Column(String(36), ForeignKey("subjects.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("class_arm_id", "subject_id"),)


class AssessmentType(Base):
    """One column of a school's assessment schema (e.g. "Test 1", max 20)."""

    __tablename__ = "assessment_types"

    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(36), ForeignKey("schools.id"), nullable=False, index=True)
    name = Column(String(64), nullable=False)
    max_score = Column(Integer, nullable=False)
    is_exam = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0)
    deleted_at = Column(DateTime(timezone=True))
