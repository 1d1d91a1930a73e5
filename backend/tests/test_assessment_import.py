import io
from datetime import datetime, timezone

import openpyxl
import pytest
from conftest import make_csv, make_xlsx
from sqlalchemy import func, select, update

from app.core.exceptions import (
    FileRejectedError,
    ParseRejectedError,
    ReferenceNotFoundError,
    TemplateNotRecognizedError,
    TemplateReferenceError,
    TermLockedError,
)
from app.db.models import AssessmentScore, AssessmentType, ImportJob, Subject
from app.services import import_intake, job_ledger
from app.services.assessment_templates import HEADER_ROW, generate_score_template, read_score_upload
from app.services.file_validation import XLSX_MEDIA_TYPE
from app.services.importers.assessment_scores import parse_score

TEST_1, TEST_2, EXAM = 4, 5, 6


@pytest.fixture
def roster(school, enrol):
    return [
        enrol(school.arm_a, "STU001", "Ada", "Obi"),
        enrol(school.arm_a, "STU002", "Bola", "Ade"),
    ]


def _template(db, school, **overrides):
    params = {
        "subject": "Mathematics",
        "term": "First Term",
        "session_name": "2024/2025",
        "level": "JSS 1",
        "class_arm": "A",
    }
    params.update(overrides)
    content, file_name = generate_score_template(db, school.id, "user-1", **params)
    db.commit()
    return content, file_name


def _fill(content, cells):
    workbook = openpyxl.load_workbook(io.BytesIO(content))
    sheet = workbook.active
    for (row, column), value in cells.items():
        sheet.cell(row=row, column=column, value=value)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _submit(db, school, dispatched, content, **kwargs):
    import_intake.submit_assessment_scores(
        db,
        school_id=school.id,
        user_id="user-1",
        content=content,
        file_name="scores.xlsx",
        media_type=XLSX_MEDIA_TYPE,
        dispatch=dispatched.append,
        **kwargs,
    )
    return dispatched[-1]


def _scores(db):
    return {
        (s.student_id, s.name): s.score
        for s in db.scalars(
            select(AssessmentScore)
            .where(AssessmentScore.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
    }


def test_generated_template_lists_the_class_and_schema(db, school, roster):
    content, file_name = _template(db, school)

    assert file_name == "Mathematics_JSS_1_A_First_Term_2024_2025.xlsx"
    sheet = openpyxl.load_workbook(io.BytesIO(content)).active
    headers = [c.value for c in sheet[HEADER_ROW]][:6]
    assert headers == [
        "S/N",
        "Student Name",
        "Student Number",
        "Test 1 (Max: 20)",
        "Test 2 (Max: 20)",
        "Exam (Max: 60)",
    ]
    assert sheet.cell(row=5, column=2).value == "Obi Ada"
    assert sheet.cell(row=6, column=3).value == "STU002"
    assert sheet.column_dimensions["CV"].hidden


def test_filled_template_becomes_one_record_per_score(db, school, roster):
    content, _ = _template(db, school)
    filled = _fill(content, {(5, TEST_1): 18, (5, EXAM): 55, (6, TEST_2): "12.5"})

    upload = read_score_upload(db, filled, school.id)

    assert upload.errors == []
    assert [(r["student_no"], r["assessment_name"], r["score"]) for r in upload.records] == [
        ("STU001", "Test 1", 18),
        ("STU001", "Exam", 55),
        ("STU002", "Test 2", 12.5),
    ]
    assert upload.context["term_id"] == school.term.id
    assert upload.context["class_arm_id"] == school.arm_a.id
    assert upload.context["class_arm"] == "JSS 1 A"


def test_scores_are_written_by_the_worker(db, school, roster, dispatched, run_job):
    content, _ = _template(db, school)
    payload = _submit(db, school, dispatched, _fill(content, {(5, TEST_1): 18, (6, EXAM): 41}))
    assert payload["options"]["update_existing"] is True

    result = run_job(payload)

    assert (result["successful"], result["failed"]) == (2, 0)
    ada, bola = roster
    assert _scores(db) == {(ada.id, "Test 1"): 18.0, (bola.id, "Exam"): 41.0}


def test_reupload_updates_scores_in_place(db, school, roster, dispatched, run_job):
    content, _ = _template(db, school)
    run_job(_submit(db, school, dispatched, _fill(content, {(5, TEST_1): 10})))

    content, _ = _template(db, school)
    sheet = openpyxl.load_workbook(io.BytesIO(content)).active
    assert sheet.cell(row=5, column=TEST_1).value == 10
    run_job(_submit(db, school, dispatched, _fill(content, {(5, TEST_1): 15})))

    ada = roster[0]
    assert _scores(db) == {(ada.id, "Test 1"): 15.0}
    assert db.scalar(select(func.count(AssessmentScore.id))) == 1


def test_out_of_range_and_unknown_students_fail_per_record(db, school, roster, dispatched, run_job):
    content, _ = _template(db, school)
    filled = _fill(content, {(5, TEST_1): 25, (6, TEST_1): 12, (7, 2): "New Pupil", (7, 3): "STU999", (7, TEST_1): 5})

    result = run_job(_submit(db, school, dispatched, filled))

    assert (result["successful"], result["failed"]) == (1, 2)
    messages = [e["message"] for e in job_ledger.get_job_errors(db, dispatched[-1]["job_id"], school.id)]
    assert "out of range (0 - 20)" in messages[0]
    assert "STU999" in messages[1] and "not found" in messages[1]


def test_student_of_another_class_is_rejected(db, school, roster, enrol, dispatched, run_job):
    enrol(school.arm_b, "STU003", "Chidi", "Eze")
    content, _ = _template(db, school)
    filled = _fill(content, {(7, 2): "Eze Chidi", (7, 3): "STU003", (7, TEST_1): 5})

    result = run_job(_submit(db, school, dispatched, filled))

    assert result["failed"] == 1
    error = job_ledger.get_job_errors(db, dispatched[-1]["job_id"], school.id)[0]
    assert "not enrolled in JSS 1 A" in error["message"]


def test_workbook_without_metadata_is_not_recognized(db, school, dispatched):
    content = make_xlsx([["S/N", "Student Name", "Student Number", "Test 1"], [1, "Obi Ada", "STU001", 10]])

    with pytest.raises(TemplateNotRecognizedError, match="metadata not found"):
        _submit(db, school, dispatched, content)
    assert dispatched == []
    assert db.scalar(select(func.count(ImportJob.id))) == 0


def test_template_of_another_school_is_not_recognized(db, school, roster):
    content, _ = _template(db, school)
    with pytest.raises(TemplateNotRecognizedError, match="different school"):
        read_score_upload(db, content, "school-2")


def test_locked_term_is_refused(db, school, roster, dispatched):
    content, _ = _template(db, school, term="Second Term")
    with pytest.raises(TermLockedError):
        _submit(db, school, dispatched, _fill(content, {(5, TEST_1): 10}))


def test_explicit_term_must_belong_to_the_school(db, school, roster, dispatched):
    content, _ = _template(db, school)
    filled = _fill(content, {(5, TEST_1): 10})
    with pytest.raises(TermLockedError):
        _submit(db, school, dispatched, filled, term_id=school.locked_term.id)
    with pytest.raises(ReferenceNotFoundError):
        _submit(db, school, dispatched, filled, term_id="no-such-term")


def test_deleted_subject_invalidates_the_template(db, school, roster):
    content, _ = _template(db, school)
    db.execute(
        update(Subject)
        .where(Subject.id == school.subject.id)
        .values(deleted_at=datetime.now(timezone.utc))
    )
    db.commit()

    with pytest.raises(TemplateReferenceError, match="Mathematics"):
        read_score_upload(db, content, school.id)


def test_non_numeric_score_rejects_the_upload(db, school, roster, dispatched):
    content, _ = _template(db, school)
    with pytest.raises(ParseRejectedError) as info:
        _submit(db, school, dispatched, _fill(content, {(5, TEST_1): "absent"}))
    assert info.value.errors[0]["row"] == 5
    assert info.value.errors[0]["field"] == "Test 1"
    assert dispatched == []


def test_empty_template_is_rejected(db, school, roster, dispatched):
    content, _ = _template(db, school)
    with pytest.raises(ParseRejectedError, match="1 error"):
        _submit(db, school, dispatched, content)


def test_scores_must_come_as_xlsx(db, school, dispatched):
    with pytest.raises(FileRejectedError):
        import_intake.submit_assessment_scores(
            db,
            school_id=school.id,
            user_id="user-1",
            content=make_csv([["1", "Obi Ada", "STU001", "10"]]),
            file_name="scores.csv",
            media_type="text/csv",
            dispatch=dispatched.append,
        )


def test_unknown_labels_list_the_alternatives(db, school):
    with pytest.raises(ReferenceNotFoundError) as info:
        _template(db, school, subject="Physics")
    assert info.value.alternatives == ["Mathematics"]


def test_school_without_assessment_types_cannot_get_a_template(db, school):
    db.execute(update(AssessmentType).values(deleted_at=datetime.now(timezone.utc)))
    db.commit()
    with pytest.raises(TemplateReferenceError, match="No assessment types"):
        _template(db, school)


def test_non_finite_scores_reject_the_upload(db, school, roster, dispatched):
    content, _ = _template(db, school)
    filled = _fill(content, {(5, TEST_1): "nan", (6, EXAM): "inf"})

    with pytest.raises(ParseRejectedError) as info:
        _submit(db, school, dispatched, filled)

    assert [(e["row"], e["field"], e["kind"]) for e in info.value.errors] == [
        (5, "Test 1", "format"),
        (6, "Exam", "format"),
    ]
    assert dispatched == []


def test_score_values_must_be_finite_numbers():
    assert parse_score("12.5") == 12.5
    assert parse_score(18) == 18.0
    assert parse_score("NaN") is None
    assert parse_score("-inf") is None
    assert parse_score(float("inf")) is None
    assert parse_score(True) is None


def test_student_numbers_match_exactly(db, school, roster, dispatched, run_job):
    content, _ = _template(db, school)
    filled = _fill(
        content,
        {(5, 3): "stu001", (5, TEST_1): 5, (7, 2): "Obi Ada", (7, 3): "STU001", (7, TEST_1): 7},
    )

    result = run_job(_submit(db, school, dispatched, filled))

    assert (result["successful"], result["failed"]) == (1, 1)
    error = job_ledger.get_job_errors(db, dispatched[-1]["job_id"], school.id)[0]
    assert "'stu001' not found" in error["message"]
    assert _scores(db) == {(roster[0].id, "Test 1"): 7.0}
