import csv
import io

import openpyxl
from conftest import SCHOOL_HEADERS, make_csv, make_xlsx

from app.api.dependencies.tasks import get_dispatcher
from app.db.models import ImportJob
from app.main import app
from app.services.file_validation import XLSX_MEDIA_TYPE
from app.services.importers.students import TEMPLATE_HEADERS

UPLOAD_URL = "/api/students/bulk-import/upload"
JOBS_URL = "/api/imports/jobs"
OTHER_SCHOOL = {"X-School-Id": "school-2", "X-User-Id": "user-9"}


def _upload(client, content, name="roster.csv", media_type="text/csv", headers=SCHOOL_HEADERS, **form):
    return client.post(
        UPLOAD_URL,
        files={"file": (name, content, media_type)},
        data={k: str(v).lower() for k, v in form.items()},
        headers=headers,
    )


def _roster(count=3):
    return make_csv([[f"Student{i}", "Obi", "FEMALE", "JSS 1 A"] for i in range(1, count + 1)])


def test_row_missing_a_required_field_rejects_the_upload(client, school, dispatched):
    content = make_csv(
        [["Ada", "Obi", "FEMALE", "JSS 1 A"], ["Bola", "", "MALE", "JSS 1 A"], ["Chidi", "Eze", "MALE", "JSS 1 B"]]
    )

    response = _upload(client, content)

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "parse_rejected"
    assert [(e["row"], e["field"]) for e in detail["errors"]] == [(3, "last_name")]
    assert "Missing required fields (1):" in detail["summary"]
    assert dispatched == []


def test_valid_roster_is_queued(client, school, dispatched):
    response = _upload(client, _roster(), batch_size=10)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["progress"] == {
        "total_records": 3,
        "processed": 0,
        "successful": 0,
        "failed": 0,
        "percentage": 0,
    }
    assert len(dispatched) == 1
    payload = dispatched[0]
    assert payload["job_id"] == body["job_id"]
    assert payload["school_id"] == "school-1"
    assert payload["options"] == {"skip_duplicates": True, "update_existing": False, "batch_size": 10}
    assert len(payload["records"]) == 3


def test_identity_headers_are_required(client, school):
    response = _upload(client, _roster(), headers={})
    assert response.status_code == 401


def test_conflicting_options_are_rejected(client, school, dispatched):
    response = _upload(client, _roster(), skip_duplicates=True, update_existing=True)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_options"

    response = _upload(client, _roster(), batch_size=5)
    assert response.status_code == 400
    assert "batch_size" in response.json()["detail"]["message"]
    assert dispatched == []


def test_unsupported_file_is_rejected_with_reasons(client, school):
    response = _upload(client, b"%PDF-1.4", name="roster.pdf", media_type="application/pdf")
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "file_rejected"
    assert detail["errors"]


def test_queue_failure_fails_the_job(client, school, db):
    def broken_queue(payload):
        raise ConnectionError("broker unreachable")

    app.dependency_overrides[get_dispatcher] = lambda: broken_queue

    response = _upload(client, _roster())

    assert response.status_code == 500
    job = db.query(ImportJob).one()
    assert job.status == "FAILED"
    assert job.error_message.startswith("Failed to queue import")


def test_job_can_be_polled_until_completion(client, school, dispatched, run_job):
    job_id = _upload(client, _roster()).json()["job_id"]

    pending = client.get(f"{JOBS_URL}/{job_id}", headers=SCHOOL_HEADERS).json()
    assert pending["status"] == "PENDING"
    assert pending["message"] == "Queued"

    run_job(dispatched[0])

    done = client.get(f"{JOBS_URL}/{job_id}", headers=SCHOOL_HEADERS).json()
    assert done["status"] == "COMPLETED"
    assert (done["processed"], done["successful"], done["failed"]) == (3, 3, 0)
    assert done["percentage"] == 100
    assert done["errors"] == []


def test_record_errors_are_listed(client, school, dispatched, run_job):
    content = make_csv([["Ada", "Obi", "FEMALE", "JSS 1 A"], ["Bola", "Ade", "MALE", "SS 3 Z"]])
    job_id = _upload(client, content).json()["job_id"]
    run_job(dispatched[0])

    response = client.get(f"{JOBS_URL}/{job_id}/errors", headers=SCHOOL_HEADERS)

    assert response.status_code == 200
    errors = response.json()
    assert len(errors) == 1
    assert errors[0]["row"] == 2
    assert errors[0]["source_row"] == 3
    assert 'Invalid class name: "SS 3 Z"' in errors[0]["message"]
    assert errors[0]["record"]["first_name"] == "Bola"


def test_jobs_of_other_schools_are_invisible(client, school):
    job_id = _upload(client, _roster()).json()["job_id"]

    assert client.get(f"{JOBS_URL}/{job_id}", headers=OTHER_SCHOOL).status_code == 404
    assert client.get(f"{JOBS_URL}/{job_id}/errors", headers=OTHER_SCHOOL).status_code == 404
    assert client.post(f"{JOBS_URL}/{job_id}/cancel", headers=OTHER_SCHOOL).status_code == 404
    assert client.get(f"{JOBS_URL}/", headers=OTHER_SCHOOL).json() == []


def test_cancelling_a_queued_job(client, school):
    job_id = _upload(client, _roster()).json()["job_id"]

    response = client.post(f"{JOBS_URL}/{job_id}/cancel", headers=SCHOOL_HEADERS)

    assert response.status_code == 202
    assert response.json()["status"] == "FAILED"
    assert response.json()["error_message"] == "Import cancelled"
    again = client.post(f"{JOBS_URL}/{job_id}/cancel", headers=SCHOOL_HEADERS)
    assert again.status_code == 409


def test_jobs_are_listed_by_status(client, school):
    first = _upload(client, _roster()).json()["job_id"]
    second = _upload(client, _roster()).json()["job_id"]
    client.post(f"{JOBS_URL}/{first}/cancel", headers=SCHOOL_HEADERS)

    pending = client.get(f"{JOBS_URL}/", params={"status": "pending"}, headers=SCHOOL_HEADERS)

    assert [j["job_id"] for j in pending.json()] == [second]


def test_roster_template_uses_a_real_class(client, school):
    response = client.get("/api/students/bulk-import/template", headers=SCHOOL_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    header, sample = response.text.splitlines()
    assert header.startswith("firstName,lastName,gender,className,dateOfBirth")
    assert ",JSS 1 A," in sample


def test_class_names_are_listed(client, school):
    response = client.get("/api/students/bulk-import/class-arms", headers=SCHOOL_HEADERS)
    assert response.json() == ["JSS 1 A", "JSS 1 B"]


def test_score_template_download(client, school):
    response = client.get(
        "/api/assessments/bulk-upload/template",
        params={
            "subject": "mathematics",
            "term": "First Term",
            "session": "2024/2025",
            "level": "JSS 1",
            "class_arm": "A",
        },
        headers=SCHOOL_HEADERS,
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == XLSX_MEDIA_TYPE
    assert "Mathematics_JSS_1_A_First_Term_2024_2025.xlsx" in response.headers["content-disposition"]
    sheet = openpyxl.load_workbook(io.BytesIO(response.content)).active
    assert sheet.cell(row=4, column=4).value == "Test 1 (Max: 20)"


def test_score_template_for_unknown_subject_lists_alternatives(client, school):
    response = client.get(
        "/api/assessments/bulk-upload/template",
        params={"subject": "Physics", "term": "First Term", "session": "2024/2025", "level": "JSS 1", "class_arm": "A"},
        headers=SCHOOL_HEADERS,
    )

    assert response.status_code == 404
    assert response.json()["detail"]["alternatives"] == ["Mathematics"]


def test_foreign_workbook_is_not_a_score_template(client, school, dispatched):
    response = client.post(
        "/api/assessments/bulk-upload",
        files={"file": ("scores.xlsx", make_xlsx([["Name", "Score"], ["Ada", 10]]), XLSX_MEDIA_TYPE)},
        headers=SCHOOL_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "template_not_recognized"
    assert dispatched == []


def test_liveness(client):
    assert client.get("/health/live").json()["status"] == "ok"


def test_xlsx_roster_template_uploads_back_unchanged(client, school, dispatched):
    response = client.get("/api/students/bulk-import/template/xlsx", headers=SCHOOL_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"] == XLSX_MEDIA_TYPE
    workbook = openpyxl.load_workbook(io.BytesIO(response.content))
    assert [c.value for c in workbook.worksheets[0][1]] == list(TEMPLATE_HEADERS)
    assert [row[0] for row in workbook["Options"].iter_rows(min_row=2, values_only=True)] == [
        "JSS 1 A",
        "JSS 1 B",
    ]

    upload = _upload(client, response.content, name="students.xlsx", media_type=XLSX_MEDIA_TYPE)

    assert upload.status_code == 202
    record = dispatched[0]["records"][0]
    assert (record["first_name"], record["class_name"], record["date_of_birth"]) == (
        "John",
        "JSS 1 A",
        "2010-05-15",
    )
    assert record["guardian_relationship"] == "Mother"
    assert record["admission_no"] is None


def test_error_report_downloads_as_csv(client, school, dispatched, run_job):
    content = make_csv([["Ada", "Obi", "FEMALE", "JSS 1 A"], ["Bola", "Ade", "MALE", "SS 3 Z"]])
    job_id = _upload(client, content).json()["job_id"]
    run_job(dispatched[0])

    response = client.get(f"{JOBS_URL}/{job_id}/errors.csv", headers=SCHOOL_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert f"import-errors-{job_id}.csv" in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0] == ["Row Number", "Field Name", "Error Message", "Field Value"]
    assert len(rows) == 2
    assert rows[1][0] == "3"
    assert rows[1][2].startswith('Invalid class name: "SS 3 Z"')
    assert client.get(f"{JOBS_URL}/{job_id}/errors.csv", headers=OTHER_SCHOOL).status_code == 404
