from datetime import datetime

from conftest import make_csv, make_xlsx

from app.services.file_validation import DELIMITED, SPREADSHEET
from app.services.importers import get_importer
from app.services.record_parser import build_error_summary, parse_upload

students = get_importer("students")


def test_missing_required_field_reports_row_and_field():
    content = make_csv(
        [
            ["Ada", "Obi", "female", "JSS 1 A"],
            ["Bola", "", "male", "JSS 1 A"],
            ["Chidi", "Eze", "MALE", "JSS 1 B"],
        ]
    )
    result = parse_upload(content, DELIMITED, students)
    assert len(result.records) == 2
    assert len(result.errors) == 1
    error = result.errors[0]
    assert error["row"] == 3
    assert error["field"] == "last_name"
    assert error["kind"] == "missing"


def test_header_variants_are_tolerated():
    content = make_csv(
        [["Ada", "Obi", "Female", "JSS 1 A", "ada@example.com"]],
        header=["First Name", "last_name", "GENDER", "class-name", "Email"],
    )
    result = parse_upload(content, DELIMITED, students)
    assert result.ok
    record = result.records[0]
    assert record["first_name"] == "Ada"
    assert record["gender"] == "FEMALE"
    assert record["class_name"] == "JSS 1 A"
    assert record["email"] == "ada@example.com"
    assert record["row_number"] == 2


def test_blank_rows_do_not_change_the_record_set():
    rows = [["Ada", "Obi", "FEMALE", "JSS 1 A"], ["Bola", "Ade", "MALE", "JSS 1 A"]]
    plain = parse_upload(make_csv(rows), DELIMITED, students)
    spaced = parse_upload(
        make_csv([rows[0], ["", "", "", ""], [" ", "", "", ""], rows[1]]), DELIMITED, students
    )
    strip = lambda records: [{k: v for k, v in r.items() if k != "row_number"} for r in records]
    assert spaced.ok
    assert strip(spaced.records) == strip(plain.records)


def test_format_errors_are_collected_per_row():
    content = make_csv(
        [
            ["Ada", "Obi", "Other", "JSS 1 A", "", ""],
            ["Bola", "Ade", "MALE", "JSS 1 A", "not-an-email", ""],
            ["Chidi", "Eze", "MALE", "JSS 1 A", "", "12"],
        ],
        header=["firstName", "lastName", "gender", "className", "email", "phone"],
    )
    result = parse_upload(content, DELIMITED, students)
    assert [e["row"] for e in result.errors] == [2, 3, 4]
    assert [e["field"] for e in result.errors] == ["gender", "email", "phone"]
    assert all(e["kind"] == "format" for e in result.errors)


def test_phone_separators_are_ignored():
    content = make_csv(
        [["Ada", "Obi", "FEMALE", "JSS 1 A", "+234 (801) 234-5678"]],
        header=["firstName", "lastName", "gender", "className", "phone"],
    )
    assert parse_upload(content, DELIMITED, students).ok


def test_spreadsheet_rows_map_by_position_and_convert_dates():
    content = make_xlsx(
        [
            ["First", "Last", "Gender", "Class", "DOB"],
            ["Ada", "Obi", "female", "JSS 1 A", datetime(2011, 3, 4)],
            [None, None, None, None, None],
            ["Bola", "Ade", "MALE", "JSS 1 B", 40000],
        ]
    )
    result = parse_upload(content, SPREADSHEET, students)
    assert result.ok
    assert [r["row_number"] for r in result.records] == [2, 4]
    assert result.records[0]["date_of_birth"] == "2011-03-04"
    assert result.records[1]["date_of_birth"] == "2009-07-06"


def test_invalid_date_string_is_a_format_error():
    content = make_csv(
        [["Ada", "Obi", "FEMALE", "JSS 1 A", "04/03/2011"]],
        header=["firstName", "lastName", "gender", "className", "dateOfBirth"],
    )
    result = parse_upload(content, DELIMITED, students)
    assert result.errors[0]["field"] == "date_of_birth"
    assert result.errors[0]["value"] == "04/03/2011"


def test_undecodable_file_is_a_single_file_level_error():
    result = parse_upload(b"\xff\xfe\x00bad", DELIMITED, students)
    assert result.records == []
    assert len(result.errors) == 1
    assert result.errors[0]["row"] == 0


def test_summary_groups_problems_by_kind():
    errors = [
        {"row": 3, "field": "last_name", "error": "Missing required fields: last_name", "kind": "missing"},
        {"row": 5, "field": "email", "error": "Invalid email format: x", "kind": "format"},
        {"row": 6, "field": "phone", "error": "Invalid phone format: 1", "kind": "format"},
    ]
    summary = build_error_summary(errors)
    assert "Found 3 problem(s)" in summary
    assert "Missing required fields (1):" in summary
    assert "Format errors (2):" in summary
    assert "Affected rows: 5, 6" in summary
    assert "Invalid values" not in summary
