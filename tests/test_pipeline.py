"""Batch orchestration tests against the in-memory store."""

import asyncio
import io
import uuid
import zipfile

import pytest
from openpyxl import Workbook

from app.api.v1.bulk_uploads.credentials import UsernameAllocator
from app.api.v1.bulk_uploads.service import run_import_batch
from app.core.enums import ImportType, RowStatus, UploadStatus

from memory_store import InMemoryRosterStore

STUDENT_HEADER = "first_name,last_name,email,phone,address,student_id\n"


def _csv(*lines: str, header: str = STUDENT_HEADER) -> bytes:
    return (header + "\n".join(lines) + "\n").encode("utf-8")


async def _run(store, content, allocator, import_type=ImportType.STUDENTS, tenant_id=None, **kwargs):
    return await run_import_batch(
        store,
        content,
        import_type,
        tenant_id or uuid.uuid4(),
        file_name=kwargs.pop("file_name", "roster.csv"),
        allocator=allocator,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_duplicate_email_and_missing_email_scenario(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    """Rows [a@x.com, "", a@x.com]: two successes, one failure on row 2, one identity."""
    content = _csv(
        "Ada,Lovelace,a@x.com,,,S-1",
        "Bob,Smith,,,,S-2",
        "Ada,Lovelace,a@x.com,,,S-1",
    )
    report = await _run(memory_store, content, allocator, concurrency=4)

    assert report.status == UploadStatus.COMPLETED
    assert (report.total_rows, report.success_count, report.failure_count) == (3, 2, 1)
    assert [(e.row_number, e.message) for e in report.errors] == [(2, "missing email")]
    assert len(memory_store.identities) == 1
    assert sum(1 for o in report.outcomes if o.created) == 1
    assert len(memory_store.role_records) == 1


@pytest.mark.asyncio
async def test_audit_records_counts_and_error_log(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    tenant_id = uuid.uuid4()
    content = _csv("Ada,Lovelace,a@x.com,,,", "Bob,Smith,,,,", "Cy,Young,c@x.com,,,")
    report = await _run(memory_store, content, allocator, tenant_id=tenant_id, file_name="spring.csv")

    audit = memory_store.audits[report.upload_id]
    assert audit["tenant_id"] == tenant_id
    assert audit["upload_type"] == "students"
    assert audit["file_name"] == "spring.csv"
    assert audit["total_records"] == 3
    assert audit["successful_records"] == 2
    assert audit["failed_records"] == 1
    assert audit["status"] == "completed"
    assert audit["error_log"] == ["Row 2: missing email"]
    assert audit["completed_at"] is not None


@pytest.mark.asyncio
async def test_rerunning_the_same_file_changes_nothing(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    tenant_id = uuid.uuid4()
    content = _csv("Ada,Lovelace,a@x.com,555-0100,1 Main St,S-1", "Alan,Turing,t@x.com,,,S-2")

    first = await _run(memory_store, content, allocator, tenant_id=tenant_id)
    identities = dict(memory_store.identities)
    credentials = dict(memory_store.credentials)
    role_records = {k: dict(v) for k, v in memory_store.role_records.items()}

    second = await _run(memory_store, content, allocator, tenant_id=tenant_id)

    assert first.success_count == second.success_count == 2
    assert all(o.created for o in first.outcomes)
    assert not any(o.created for o in second.outcomes)
    assert memory_store.identities == identities
    assert memory_store.credentials == credentials
    assert memory_store.role_records == role_records
    assert len(memory_store.audits) == 2


@pytest.mark.asyncio
async def test_one_failing_row_does_not_stop_the_others(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    memory_store.fail_role_record_for.add("b@x.com")
    content = _csv("Ada,Lovelace,a@x.com,,,", "Bob,Smith,b@x.com,,,", "Cy,Young,c@x.com,,,")
    report = await _run(memory_store, content, allocator, concurrency=3)

    assert [o.status for o in report.outcomes] == [RowStatus.SUCCESS, RowStatus.FAILURE, RowStatus.SUCCESS]
    error = report.errors[0]
    assert error.row_number == 2
    assert error.message.startswith("role record write failed: role record table unavailable")
    assert "identity b@x.com was saved" in error.message
    # Identity written before the failing step stays written
    assert len(memory_store.identities) == 3


@pytest.mark.asyncio
async def test_unexpected_store_error_names_the_step(allocator: UsernameAllocator) -> None:
    class BrokenRoleRecords(InMemoryRosterStore):
        async def upsert_role_record(self, identity_id, import_type, fields) -> None:
            raise RuntimeError("boom")

    report = await _run(BrokenRoleRecords(), _csv("Ada,Lovelace,a@x.com,,,"), allocator)
    assert report.failure_count == 1
    assert report.errors[0].message.startswith("role record write failed: boom")


@pytest.mark.asyncio
async def test_same_name_gets_numeric_suffix(memory_store: InMemoryRosterStore, allocator: UsernameAllocator) -> None:
    content = _csv("Ann,Lee,ann1@x.com,,,", "Ann,Lee,ann2@x.com,,,", "Ann,Lee,ann3@x.com,,,")
    report = await _run(memory_store, content, allocator, concurrency=3)

    assert report.success_count == 3
    assert sorted(o.username for o in report.outcomes) == ["ann.lee", "ann.lee.2", "ann.lee.3"]


@pytest.mark.asyncio
async def test_outcomes_follow_file_order(allocator: UsernameAllocator) -> None:
    class SlowEarlyRows(InMemoryRosterStore):
        async def find_identity_by_email(self, tenant_id, email):
            # p0 is slowest, p7 fastest
            await asyncio.sleep((8 - int(email[1])) * 0.003)
            return await super().find_identity_by_email(tenant_id, email)

    lines = [f"P{i},Person,p{i}@x.com,,," if i % 3 else f"P{i},Person,,,," for i in range(8)]
    report = await _run(SlowEarlyRows(), _csv(*lines), allocator, concurrency=4)

    assert [o.row_number for o in report.outcomes] == list(range(1, 9))
    assert [e.row_number for e in report.errors] == [1, 4, 7]


@pytest.mark.asyncio
async def test_unsupported_file_fails_the_batch(memory_store: InMemoryRosterStore, allocator: UsernameAllocator) -> None:
    report = await _run(memory_store, b"first_name\nAda\n", allocator, file_name="roster.txt")

    assert report.status == UploadStatus.FAILED
    assert (report.total_rows, report.success_count, report.failure_count) == (0, 0, 0)
    assert report.outcomes == []
    assert report.errors[0].row_number == 0
    assert "Unsupported file type" in report.errors[0].message
    audit = memory_store.audits[report.upload_id]
    assert audit["status"] == "failed"
    assert audit["total_records"] == 0
    assert audit["error_log"] == [report.errors[0].message]
    assert memory_store.identities == {}


@pytest.mark.asyncio
async def test_damaged_workbook_fails_the_batch(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    """Sheet XML cut short: the workbook opens, reading its rows fails."""
    wb = Workbook()
    wb.active.append(["first_name", "last_name", "email"])
    wb.active.append(["Ada", "Lovelace", "a@x.com"])
    source = io.BytesIO()
    wb.save(source)
    damaged = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(source.getvalue())) as zin, zipfile.ZipFile(damaged, "w") as zout:
        for item in zin.infolist():
            data = zin.read(item.filename)
            if item.filename == "xl/worksheets/sheet1.xml":
                data = data[: len(data) // 2]
            zout.writestr(item, data)

    report = await _run(memory_store, damaged.getvalue(), allocator, file_name="roster.xlsx")

    assert report.status == UploadStatus.FAILED
    assert report.outcomes == []
    assert report.errors[0].row_number == 0
    assert report.errors[0].message.startswith("Could not read Excel file")
    audit = memory_store.audits[report.upload_id]
    assert audit["status"] == "failed"
    assert audit["completed_at"] is not None


@pytest.mark.asyncio
async def test_file_without_data_rows_fails_the_batch(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    report = await _run(memory_store, _csv(), allocator)
    assert report.status == UploadStatus.FAILED
    assert report.error_log() == ["File has no data rows"]


@pytest.mark.asyncio
async def test_audit_failures_do_not_change_the_report(allocator: UsernameAllocator) -> None:
    content = _csv("Ada,Lovelace,a@x.com,,,", "Bob,Smith,,,,")

    no_audit = InMemoryRosterStore()
    no_audit.fail_audit_create = True
    report = await _run(no_audit, content, allocator)
    assert report.upload_id is None
    assert (report.status, report.success_count, report.failure_count) == (UploadStatus.COMPLETED, 1, 1)
    assert "finalize_upload_audit" not in no_audit.calls

    no_finalize = InMemoryRosterStore()
    no_finalize.fail_audit_finalize = True
    report = await _run(no_finalize, content, allocator)
    assert (report.status, report.success_count, report.failure_count) == (UploadStatus.COMPLETED, 1, 1)
    assert no_finalize.audits[report.upload_id]["status"] == "processing"


@pytest.mark.asyncio
async def test_cancelled_before_start_attempts_nothing(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    cancel = asyncio.Event()
    cancel.set()
    report = await _run(memory_store, _csv("Ada,Lovelace,a@x.com,,,"), allocator, cancel_event=cancel)

    assert report.cancelled
    assert report.status == UploadStatus.PROCESSING
    assert report.total_rows == 1
    assert report.outcomes == []
    assert memory_store.identities == {}
    audit = memory_store.audits[report.upload_id]
    assert audit["status"] == "processing"
    assert audit["completed_at"] is None


@pytest.mark.asyncio
async def test_cancel_mid_batch_lets_in_flight_row_finish(allocator: UsernameAllocator) -> None:
    cancel = asyncio.Event()

    class CancelOnSecondIdentity(InMemoryRosterStore):
        async def create_identity(self, tenant_id, fields):
            identity = await super().create_identity(tenant_id, fields)
            if len(self.identities) == 2:
                cancel.set()
            return identity

    store = CancelOnSecondIdentity()
    lines = [f"P{i},Person,p{i}@x.com,,," for i in range(5)]
    report = await _run(store, _csv(*lines), allocator, concurrency=1, cancel_event=cancel)

    assert report.cancelled
    assert report.total_rows == 5
    assert [o.row_number for o in report.outcomes] == [1, 2]
    assert report.success_count == 2
    assert store.audits[report.upload_id]["successful_records"] == 2
    assert store.audits[report.upload_id]["completed_at"] is None


@pytest.mark.asyncio
async def test_rerun_provisions_missing_credential(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    tenant_id = uuid.uuid4()
    content = _csv("Ada,Lovelace,a@x.com,,,S-1")
    memory_store.fail_credential_for.add("a@x.com")

    first = await _run(memory_store, content, allocator, tenant_id=tenant_id)
    assert first.failure_count == 1
    assert first.errors[0].message.startswith("credential write failed")
    assert first.errors[0].message.endswith("(identity a@x.com was saved)")
    (saved,) = memory_store.identities.values()
    assert first.outcomes[0].identity_id == saved.id
    assert first.outcomes[0].created is True
    assert memory_store.credentials == {}

    memory_store.fail_credential_for.clear()
    second = await _run(memory_store, content, allocator, tenant_id=tenant_id)
    assert second.success_count == 1
    outcome = second.outcomes[0]
    assert outcome.created is False
    assert outcome.username == "ada.lovelace"
    assert memory_store.credentials[outcome.identity_id].username == "ada.lovelace"


@pytest.mark.asyncio
async def test_reset_credentials_issues_new_passwords(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    tenant_id = uuid.uuid4()
    content = _csv("Ada,Lovelace,a@x.com,,,", "Alan,Turing,t@x.com,,,")
    await _run(memory_store, content, allocator, tenant_id=tenant_id)
    usernames = memory_store.usernames_for(tenant_id)

    report = await _run(memory_store, content, allocator, tenant_id=tenant_id, reset_credentials=True)
    assert report.success_count == 2
    assert memory_store.calls.count("reset_credential") == 2
    assert memory_store.usernames_for(tenant_id) == usernames
    assert all(o.credential_reset for o in report.outcomes)
    assert all(o.username is None for o in report.outcomes)


@pytest.mark.asyncio
async def test_existing_identity_updated_without_clearing_fields(
    memory_store: InMemoryRosterStore, allocator: UsernameAllocator
) -> None:
    tenant_id = uuid.uuid4()
    await _run(memory_store, _csv("Ada,Lovelace,a@x.com,555-0100,1 Main St,S-1"), allocator, tenant_id=tenant_id)
    await _run(memory_store, _csv("Ada,King,A@X.com,555-0199,,"), allocator, tenant_id=tenant_id)

    (identity,) = memory_store.identities.values()
    assert identity.last_name == "King"
    assert identity.phone == "555-0199"
    assert identity.address == "1 Main St"
    assert memory_store.role_records[(identity.id, ImportType.STUDENTS)]["student_id"] == "S-1"


@pytest.mark.asyncio
async def test_staff_and_teacher_roles(memory_store: InMemoryRosterStore, allocator: UsernameAllocator) -> None:
    tenant_id = uuid.uuid4()
    staff = await _run(
        memory_store,
        _csv("Sam,Clerk,s@x.com,Bursar", header="first_name,last_name,email,position\n"),
        allocator,
        import_type=ImportType.STAFF,
        tenant_id=tenant_id,
    )
    teacher = await _run(
        memory_store,
        _csv("Tia,Reed,t@x.com,T-7,2021-08-30", header="first_name,last_name,email,employee_id,hire_date\n"),
        allocator,
        import_type="teachers",
        tenant_id=tenant_id,
    )

    staff_identity = memory_store.identities[staff.outcomes[0].identity_id]
    teacher_identity = memory_store.identities[teacher.outcomes[0].identity_id]
    assert staff_identity.role == "admin"
    assert teacher_identity.role == "teacher"
    assert memory_store.role_records[(staff_identity.id, ImportType.STAFF)] == {"position": "Bursar"}
    teacher_record = memory_store.role_records[(teacher_identity.id, ImportType.TEACHERS)]
    assert teacher_record["employee_id"] == "T-7"
