"""Tests for row validation into typed roster candidates."""

from datetime import date
from decimal import Decimal

import pytest

from app.api.v1.bulk_uploads.schemas import ImportRow, StaffCandidate, StudentCandidate, TeacherCandidate
from app.api.v1.bulk_uploads.validator import columns_for, normalize_header, validate_row
from app.core.enums import Gender, ImportType
from app.core.exceptions import RowValidationError


def _row(**fields) -> ImportRow:
    base = {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@x.com"}
    base.update(fields)
    return ImportRow(row_number=4, raw_fields=base)


def test_student_row_validates() -> None:
    candidate = validate_row(
        _row(student_id="S-001", date_of_birth="2010-05-01", gender="F", parent_email="mum@x.com"),
        ImportType.STUDENTS,
    )
    assert isinstance(candidate, StudentCandidate)
    assert candidate.student_id == "S-001"
    assert candidate.date_of_birth == date(2010, 5, 1)
    assert candidate.gender == Gender.FEMALE


def test_teacher_and_staff_rows_validate() -> None:
    teacher = validate_row(_row(employee_id="T-9", salary="42000.50"), ImportType.TEACHERS)
    staff = validate_row(_row(position="Bursar", hire_date="2020-01-06"), "staff")
    assert isinstance(teacher, TeacherCandidate)
    assert teacher.salary == Decimal("42000.50")
    assert isinstance(staff, StaffCandidate)
    assert staff.hire_date == date(2020, 1, 6)


def test_email_is_lowercased() -> None:
    candidate = validate_row(_row(email="Ada.Lovelace@X.COM"), ImportType.STUDENTS)
    assert candidate.email == "ada.lovelace@x.com"


def test_headers_are_normalized() -> None:
    row = ImportRow(
        row_number=1,
        raw_fields={"First Name": "Ada", "last-name": "Lovelace", " EMAIL ": "ada@x.com"},
    )
    candidate = validate_row(row, ImportType.STUDENTS)
    assert (candidate.first_name, candidate.last_name) == ("Ada", "Lovelace")
    assert normalize_header(" Date Of Birth ") == "date_of_birth"


def test_unknown_columns_are_ignored() -> None:
    candidate = validate_row(_row(favourite_colour="green"), ImportType.STUDENTS)
    assert not hasattr(candidate, "favourite_colour")


def test_missing_email_reported() -> None:
    with pytest.raises(RowValidationError) as exc:
        validate_row(_row(email=""), ImportType.STUDENTS)
    assert exc.value.row_number == 4
    assert exc.value.field == "email"
    assert exc.value.reason == "missing email"


def test_first_failing_field_in_column_order() -> None:
    """Only one error per row: first_name comes before email."""
    with pytest.raises(RowValidationError) as exc:
        validate_row(_row(first_name="", email="not-an-email"), ImportType.STUDENTS)
    assert exc.value.field == "first_name"


def test_invalid_email_reported() -> None:
    with pytest.raises(RowValidationError) as exc:
        validate_row(_row(email="not-an-email"), ImportType.TEACHERS)
    assert exc.value.reason.startswith("invalid email")


def test_invalid_date_reported_without_pydantic_prefix() -> None:
    with pytest.raises(RowValidationError) as exc:
        validate_row(_row(date_of_birth="01/05/2010"), ImportType.STUDENTS)
    assert exc.value.reason == "invalid date_of_birth: expected an ISO date (YYYY-MM-DD), got '01/05/2010'"


def test_negative_salary_rejected() -> None:
    with pytest.raises(RowValidationError) as exc:
        validate_row(_row(salary="-1"), ImportType.STAFF)
    assert exc.value.field == "salary"


def test_columns_for_each_type() -> None:
    assert columns_for(ImportType.STUDENTS)[:3] == ("first_name", "last_name", "email")
    assert "student_id" in columns_for(ImportType.STUDENTS)
    assert "specialization" in columns_for(ImportType.TEACHERS)
    assert "position" in columns_for(ImportType.STAFF)
    assert "student_id" not in columns_for(ImportType.STAFF)
