"""
Pytest configuration and fixtures for the bulk import tests.

Every test gets its own SQLite database file, an in-memory stand-in for the
Redis progress store, and a dispatcher that records queued payloads instead of
sending them to Celery.
"""

import os

# Settings are read once at import time; point them at test resources first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["IMPORT_BATCH_PAUSE_MS"] = "0"

import io
from datetime import date
from types import SimpleNamespace

import openpyxl
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.api.dependencies.db import get_session
from app.api.dependencies.tasks import get_dispatcher
from app.db.base import Base
from app.db.models import (
    AcademicSession,
    AssessmentType,
    ClassArm,
    ClassArmStudent,
    Level,
    School,
    Student,
    Subject,
    Term,
)
from app.main import app
from app.services import batch_worker, progress_tracker

SCHOOL_HEADERS = {"X-School-Id": "school-1", "X-User-Id": "user-1"}


class FakeRedis:
    """Just enough of the redis client for progress snapshots."""

    def __init__(self):
        self.store = {}
        self.set_calls = []

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.set_calls.append((key, value))
        return True

    def get(self, key):
        return self.store.get(key)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(progress_tracker, "redis_client", client)
    return client


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'imports.db'}")

    # pysqlite needs explicit transaction control for SAVEPOINT to work;
    # WAL keeps the test session's reads from blocking worker writes.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory(expire_on_commit=False)
    yield session
    session.close()


def _add(session, obj):
    session.add(obj)
    session.flush()
    return obj


@pytest.fixture
def school(db):
    """One school with a current session, two class arms and an assessment schema."""
    school = _add(db, School(id="school-1", name="Unity College"))
    _add(db, School(id="school-2", name="Other School"))
    academic_session = _add(
        db, AcademicSession(school_id=school.id, academic_year="2024/2025", is_current=True)
    )
    first_term = _add(db, Term(academic_session_id=academic_session.id, name="First Term"))
    locked_term = _add(
        db, Term(academic_session_id=academic_session.id, name="Second Term", is_locked=True)
    )
    level = _add(db, Level(school_id=school.id, name="JSS 1"))
    arm_a = _add(
        db,
        ClassArm(
            school_id=school.id, level_id=level.id, academic_session_id=academic_session.id, name="A"
        ),
    )
    arm_b = _add(
        db,
        ClassArm(
            school_id=school.id, level_id=level.id, academic_session_id=academic_session.id, name="B"
        ),
    )
    subject = _add(db, Subject(school_id=school.id, name="Mathematics"))
    for position, (name, max_score, is_exam) in enumerate(
        [("Test 1", 20, False), ("Test 2", 20, False), ("Exam", 60, True)]
    ):
        _add(
            db,
            AssessmentType(
                school_id=school.id,
                name=name,
                max_score=max_score,
                is_exam=is_exam,
                position=position,
            ),
        )
    db.commit()
    return SimpleNamespace(
        id=school.id,
        session=academic_session,
        term=first_term,
        locked_term=locked_term,
        level=level,
        arm_a=arm_a,
        arm_b=arm_b,
        subject=subject,
    )


@pytest.fixture
def enrol(db):
    """Create a student enrolled in a class arm."""

    def _enrol(class_arm, student_no, first_name="Ada", last_name="Obi", **fields):
        student = _add(
            db,
            Student(
                school_id=class_arm.school_id,
                student_no=student_no,
                first_name=first_name,
                last_name=last_name,
                gender=fields.pop("gender", "FEMALE"),
                date_of_birth=fields.pop("date_of_birth", date(2011, 1, 1)),
                **fields,
            ),
        )
        _add(db, ClassArmStudent(class_arm_id=class_arm.id, student_id=student.id))
        db.commit()
        return student

    return _enrol


@pytest.fixture
def run_job(db, session_factory):
    """Run a queued payload through the worker like the Celery task would."""
    progress = []

    def _run(payload, **kwargs):
        # The worker uses its own connection; end ours so SQLite is not locked.
        db.commit()
        kwargs.setdefault(
            "on_progress", lambda job_id, snapshot, status: progress.append((status, snapshot))
        )
        result = batch_worker.run_import_job(payload, session_factory=session_factory, **kwargs)
        db.expire_all()
        return result

    _run.progress = progress
    return _run


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def client(session_factory, dispatched):
    def _session():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_dispatcher] = lambda: dispatched.append
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_csv(rows, header=None):
    header = header or ["firstName", "lastName", "gender", "className"]
    lines = [",".join(header)] + [",".join(str(v) for v in row) for row in rows]
    return ("\n".join(lines) + "\n").encode()


def make_xlsx(rows):
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(list(row))
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
