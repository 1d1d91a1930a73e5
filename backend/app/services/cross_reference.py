"""Resolve human-readable labels to tenant-scoped identifiers."""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from app.core.exceptions import ReferenceNotFoundError
from app.db.models import (
    AcademicSession,
    ClassArm,
    ClassArmSubject,
    Level,
    Subject,
    Term,
)


@dataclass
class Resolution:
    value: str
    matches: list[str] = field(default_factory=list)
    alternatives: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return len(self.matches) == 1

    @property
    def ambiguous(self) -> bool:
        return len(self.matches) > 1

    @property
    def id(self) -> str | None:
        return self.matches[0] if self.found else None


def current_academic_session(session: Session, school_id: str) -> AcademicSession | None:
    return session.scalars(
        select(AcademicSession).where(
            AcademicSession.school_id == school_id,
            AcademicSession.is_current.is_(True),
            AcademicSession.deleted_at.is_(None),
        )
    ).first()


def _class_arms(session: Session, school_id: str) -> list[ClassArm]:
    query = (
        select(ClassArm)
        .options(joinedload(ClassArm.level))
        .where(ClassArm.school_id == school_id, ClassArm.deleted_at.is_(None))
    )
    current = current_academic_session(session, school_id)
    if current is not None:
        query = query.where(ClassArm.academic_session_id == current.id)
    return list(session.scalars(query).unique())


def class_arm_names(session: Session, school_id: str) -> list[str]:
    return sorted(arm.display_name for arm in _class_arms(session, school_id))


def resolve_class_arm(session: Session, school_id: str, label: str) -> Resolution:
    """Match "<Level> <Arm>" (case-insensitive) within the current session."""
    arms = _class_arms(session, school_id)
    wanted = " ".join(label.split()).lower()
    matches = [arm.id for arm in arms if arm.display_name.lower() == wanted]
    return Resolution(
        value=label,
        matches=matches,
        alternatives=sorted(arm.display_name for arm in arms),
    )


def class_arm_exists(session: Session, school_id: str, class_arm_id: str) -> bool:
    return (
        session.scalar(
            select(ClassArm.id).where(
                ClassArm.id == class_arm_id,
                ClassArm.school_id == school_id,
                ClassArm.deleted_at.is_(None),
            )
        )
        is not None
    )


def _find_by_name(session: Session, model, column, kind: str, name: str, *filters):
    """Case-insensitive lookup; raises with the valid alternatives on a miss."""
    live = (model.deleted_at.is_(None), *filters)
    found = session.scalars(
        select(model).where(*live, func.lower(column) == name.strip().lower())
    ).first()
    if found is None:
        alternatives = sorted(session.scalars(select(column).where(*live)))
        raise ReferenceNotFoundError(kind, name, alternatives)
    return found


def find_academic_session(session: Session, school_id: str, academic_year: str) -> AcademicSession:
    return _find_by_name(
        session,
        AcademicSession,
        AcademicSession.academic_year,
        "Academic session",
        academic_year,
        AcademicSession.school_id == school_id,
    )


def find_term(session: Session, academic_session: AcademicSession, name: str) -> Term:
    return _find_by_name(
        session,
        Term,
        Term.name,
        "Term",
        name,
        Term.academic_session_id == academic_session.id,
    )


def find_level(session: Session, school_id: str, name: str) -> Level:
    return _find_by_name(
        session, Level, Level.name, "Level", name, Level.school_id == school_id
    )


def find_class_arm(session: Session, level: Level, name: str) -> ClassArm:
    return _find_by_name(
        session,
        ClassArm,
        ClassArm.name,
        f"Class arm for level '{level.name}'",
        name,
        ClassArm.level_id == level.id,
        ClassArm.school_id == level.school_id,
    )


def find_subject(session: Session, school_id: str, name: str) -> Subject:
    return _find_by_name(
        session, Subject, Subject.name, "Subject", name, Subject.school_id == school_id
    )


def get_or_create_class_arm_subject(
    session: Session, class_arm_id: str, subject_id: str
) -> ClassArmSubject:
    """Atomic find-or-create on the (class arm, subject) unique pair."""
    query = select(ClassArmSubject).where(
        ClassArmSubject.class_arm_id == class_arm_id,
        ClassArmSubject.subject_id == subject_id,
    )
    existing = session.scalars(query).first()
    if existing is not None:
        return existing
    try:
        with session.begin_nested():
            link = ClassArmSubject(class_arm_id=class_arm_id, subject_id=subject_id)
            session.add(link)
        return link
    except IntegrityError:
        # Another writer created it between the lookup and the insert.
        return session.scalars(query).one()
