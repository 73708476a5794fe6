"""
Bulk roster import: batch orchestration plus the queries behind the bulk upload endpoints.

One batch = one file. Rows are processed independently (validate → identity write →
credential write → role record write); a failing row is recorded and never stops the
others. Writes are not transactional across steps: an identity saved before a later
step fails stays saved, and re-running the same file completes it.
"""

import asyncio
import csv
import io
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import User, UserCredential
from app.core.config import settings
from app.core.enums import IdentityRole, ImportType, RowStatus, RowStep, UploadStatus
from app.core.exceptions import (
    EmptyFileError,
    PersistenceError,
    RowValidationError,
    ServiceError,
    UnsupportedFormatError,
)
from app.core.models import BulkUpload
from app.db.session import AsyncSessionLocal

from .audit_service import finalize_upload_audit, start_upload_audit
from .credentials import UsernameAllocator, default_allocator, generate_default_password
from .parser import read_rows
from .reconciler import ReconcileResult, reconcile_identity, run_step
from .role_writer import write_role_record
from .schemas import (
    BatchError,
    BatchReport,
    BulkUploadResponse,
    CredentialGenerateResponse,
    CredentialResetResponse,
    CredentialResponse,
    ImportRow,
    RowOutcome,
)
from .store import RosterStore, SqlAlchemyRosterStore
from .validator import validate_row

logger = logging.getLogger(__name__)


def get_roster_store() -> RosterStore:
    """FastAPI dependency: store over the application database."""
    return SqlAlchemyRosterStore(AsyncSessionLocal)


# ----- Row processing -----
async def process_row(
    store: RosterStore,
    allocator: UsernameAllocator,
    tenant_id: UUID,
    import_type: ImportType,
    row: ImportRow,
    *,
    reset_credentials: bool = False,
) -> RowOutcome:
    """Run one row through every step. Never raises for row-level problems."""
    step = RowStep.VALIDATE
    reconciled: Optional[ReconcileResult] = None
    try:
        candidate = validate_row(row, import_type)
        step = RowStep.RECONCILE_IDENTITY
        reconciled = await reconcile_identity(
            store, allocator, tenant_id, candidate, import_type, reset_credentials=reset_credentials
        )
        step = RowStep.WRITE_ROLE_RECORD
        await write_role_record(store, reconciled.identity, candidate, import_type)
    except RowValidationError as e:
        message = e.reason
    except PersistenceError as e:
        message = e.message
        if reconciled is None and e.identity is not None:
            reconciled = ReconcileResult(identity=e.identity, is_new=bool(e.identity_created))
    except Exception as e:
        logger.exception("Unexpected error on row %d at step %s", row.row_number, step.value)
        message = f"{step.value} failed: {e}"
    else:
        return RowOutcome(
            row_number=row.row_number,
            status=RowStatus.SUCCESS,
            identity_id=reconciled.identity.id,
            created=reconciled.is_new,
            username=reconciled.username,
            credential_reset=reconciled.credential_reset,
        )

    if reconciled is not None:
        # Earlier steps committed; say so, the operator reconciles by re-running the file
        message = f"{message} (identity {reconciled.identity.email} was saved)"
    logger.warning("Row %d failed: %s", row.row_number, message)
    return RowOutcome(
        row_number=row.row_number,
        status=RowStatus.FAILURE,
        identity_id=reconciled.identity.id if reconciled else None,
        created=reconciled.is_new if reconciled else None,
        message=message,
    )


async def _process_rows(
    rows: List[ImportRow],
    worker_count: int,
    cancel_event: Optional[asyncio.Event],
    process,
) -> List[RowOutcome]:
    """Bounded worker pool over a shared row iterator. Stops taking rows once cancelled."""
    pending = iter(rows)
    outcomes: List[RowOutcome] = []

    async def worker() -> None:
        while cancel_event is None or not cancel_event.is_set():
            row = next(pending, None)
            if row is None:
                return
            outcomes.append(await process(row))

    workers = max(1, min(worker_count, len(rows)))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return outcomes


def _build_report(
    upload_id: Optional[UUID],
    import_type: ImportType,
    total_rows: int,
    outcomes: List[RowOutcome],
) -> BatchReport:
    outcomes = sorted(outcomes, key=lambda o: o.row_number)
    failures = [o for o in outcomes if o.status == RowStatus.FAILURE]
    cancelled = len(outcomes) < total_rows
    return BatchReport(
        upload_id=upload_id,
        import_type=import_type,
        total_rows=total_rows,
        success_count=len(outcomes) - len(failures),
        failure_count=len(failures),
        errors=[BatchError(row_number=o.row_number, message=o.message or "") for o in failures],
        outcomes=outcomes,
        status=UploadStatus.PROCESSING if cancelled else UploadStatus.COMPLETED,
        cancelled=cancelled,
    )


async def run_import_batch(
    store: RosterStore,
    content: bytes,
    import_type: ImportType,
    tenant_id: UUID,
    *,
    file_name: str,
    concurrency: Optional[int] = None,
    reset_credentials: bool = False,
    cancel_event: Optional[asyncio.Event] = None,
    allocator: Optional[UsernameAllocator] = None,
) -> BatchReport:
    """
    Import one roster file for a tenant and return the batch report.

    - Unreadable file (unsupported type, corrupt, no data rows): audit recorded as failed,
      report status failed with a single row-0 error and no outcomes.
    - Otherwise every row is attempted (unless cancel_event is set); report status
      completed, outcomes and errors in ascending row order.
    - Cancelled: in-flight rows finish, untouched rows are left out of the counts, the
      report and the audit row stay in status processing.
    """
    import_type = ImportType(import_type)
    allocator = allocator or default_allocator
    if concurrency is None:
        concurrency = settings.bulk_upload_concurrency

    try:
        rows = read_rows(content, file_name)
    except (UnsupportedFormatError, EmptyFileError) as e:
        logger.warning("Bulk upload %s for tenant %s rejected: %s", file_name, tenant_id, e.message)
        upload_id = await start_upload_audit(store, tenant_id, import_type, file_name, 0)
        report = BatchReport(
            upload_id=upload_id,
            import_type=import_type,
            errors=[BatchError(row_number=0, message=e.message)],
            status=UploadStatus.FAILED,
        )
        await finalize_upload_audit(store, upload_id, UploadStatus.FAILED, 0, 0, report.error_log())
        return report

    upload_id = await start_upload_audit(store, tenant_id, import_type, file_name, len(rows))
    logger.info(
        "Bulk upload %s started: tenant=%s type=%s file=%s rows=%d",
        upload_id, tenant_id, import_type.value, file_name, len(rows),
    )

    async def process(row: ImportRow) -> RowOutcome:
        return await process_row(
            store, allocator, tenant_id, import_type, row, reset_credentials=reset_credentials
        )

    outcomes = await _process_rows(rows, concurrency, cancel_event, process)
    report = _build_report(upload_id, import_type, len(rows), outcomes)

    await finalize_upload_audit(
        store,
        upload_id,
        report.status,
        report.success_count,
        report.failure_count,
        report.error_log(),
        completed=not report.cancelled,
    )
    logger.info(
        "Bulk upload %s %s: %d succeeded, %d failed, %d of %d rows attempted",
        upload_id, report.status.value, report.success_count, report.failure_count,
        len(report.outcomes), report.total_rows,
    )
    return report


# ----- Queries for the HTTP layer -----
def _upload_to_response(upload: BulkUpload) -> BulkUploadResponse:
    return BulkUploadResponse(
        id=upload.id,
        tenant_id=upload.tenant_id,
        upload_type=upload.upload_type,
        file_name=upload.file_name,
        total_records=upload.total_records,
        successful_records=upload.successful_records,
        failed_records=upload.failed_records,
        status=upload.status,
        error_log=list(upload.error_log or []),
        created_at=upload.created_at,
        completed_at=upload.completed_at,
    )


async def list_uploads(db: AsyncSession, tenant_id: UUID) -> List[BulkUploadResponse]:
    result = await db.execute(
        select(BulkUpload)
        .where(BulkUpload.tenant_id == tenant_id)
        .order_by(BulkUpload.created_at.desc())
    )
    return [_upload_to_response(u) for u in result.scalars().all()]


async def get_upload(db: AsyncSession, tenant_id: UUID, upload_id: UUID) -> Optional[BulkUploadResponse]:
    result = await db.execute(
        select(BulkUpload).where(BulkUpload.id == upload_id, BulkUpload.tenant_id == tenant_id)
    )
    upload = result.scalar_one_or_none()
    return _upload_to_response(upload) if upload else None


def _credential_to_response(cred: UserCredential, user: User) -> CredentialResponse:
    return CredentialResponse(
        user_id=user.id,
        full_name=user.full_name,
        email=user.email,
        role=user.role,
        username=cred.username,
        default_password=cred.default_password,
        password_changed=cred.password_changed,
        is_active=cred.is_active,
    )


async def list_credentials(
    db: AsyncSession,
    tenant_id: UUID,
    role: Optional[IdentityRole] = None,
    search: Optional[str] = None,
) -> List[CredentialResponse]:
    """
    Credentials issued in the tenant, ordered by username. `search` is matched
    case-insensitively against first name, last name, email and username.
    """
    stmt = (
        select(UserCredential, User)
        .join(User, UserCredential.user_id == User.id)
        .where(UserCredential.tenant_id == tenant_id)
    )
    if role is not None:
        stmt = stmt.where(User.role == IdentityRole(role).value)
    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
                User.email.ilike(pattern),
                UserCredential.username.ilike(pattern),
            )
        )
    result = await db.execute(stmt.order_by(UserCredential.username))
    return [_credential_to_response(cred, user) for cred, user in result.all()]


def export_credentials_csv(credentials: List[CredentialResponse]) -> bytes:
    """Credential sheet handed out to schools: Name, Role, Username, Password, Status."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Name", "Role", "Username", "Password", "Status"])
    for c in credentials:
        writer.writerow(
            [c.full_name, c.role, c.username, c.default_password, "Active" if c.is_active else "Inactive"]
        )
    return buffer.getvalue().encode("utf-8")


async def set_credential_active(
    db: AsyncSession,
    tenant_id: UUID,
    user_id: UUID,
    is_active: bool,
) -> CredentialResponse:
    """Activate or deactivate a user's login credential. Raises ServiceError 404."""
    result = await db.execute(
        select(UserCredential, User)
        .join(User, UserCredential.user_id == User.id)
        .where(UserCredential.user_id == user_id, UserCredential.tenant_id == tenant_id)
    )
    row = result.first()
    if row is None:
        raise ServiceError("No credential has been issued for this user", status.HTTP_404_NOT_FOUND)
    cred, user = row
    cred.is_active = is_active
    await db.commit()
    await db.refresh(cred)
    logger.info("Credential %s for user %s set active=%s", cred.username, user_id, is_active)
    return _credential_to_response(cred, user)


async def generate_missing_credentials(
    db: AsyncSession,
    store: RosterStore,
    tenant_id: UUID,
    allocator: Optional[UsernameAllocator] = None,
) -> CredentialGenerateResponse:
    """
    Issue a username and default password to every student, teacher and admin of the
    tenant that has none yet (users created outside the importer, or rows whose
    credential step failed). A user that cannot be provisioned is listed in `errors`;
    the others still get their credential.
    """
    allocator = allocator or default_allocator
    result = await db.execute(
        select(User.id, User.first_name, User.last_name, User.email, User.role)
        .outerjoin(UserCredential, UserCredential.user_id == User.id)
        .where(
            User.tenant_id == tenant_id,
            User.role.in_([r.value for r in IdentityRole]),
            UserCredential.id.is_(None),
        )
        .order_by(User.email)
    )
    users = result.all()

    issued: List[CredentialResetResponse] = []
    errors: List[str] = []
    for user_id, first_name, last_name, email, role in users:
        try:
            username, password = await run_step(
                RowStep.PROVISION_CREDENTIAL,
                allocator.allocate(store, tenant_id, user_id, first_name, last_name, IdentityRole(role)),
            )
        except PersistenceError as e:
            logger.warning("Could not issue a credential to %s: %s", email, e.message)
            errors.append(f"{email}: {e.message}")
            continue
        issued.append(CredentialResetResponse(user_id=user_id, username=username, default_password=password))

    logger.info("Issued %d missing credentials for tenant %s (%d failed)", len(issued), tenant_id, len(errors))
    return CredentialGenerateResponse(generated=len(issued), credentials=issued, errors=errors)


async def reset_user_credential(
    db: AsyncSession,
    store: RosterStore,
    tenant_id: UUID,
    user_id: UUID,
) -> CredentialResetResponse:
    """Issue a new default password for a user of this tenant. Raises ServiceError 404."""
    result = await db.execute(select(User.id).where(User.id == user_id, User.tenant_id == tenant_id))
    if result.first() is None:
        raise ServiceError("User not found", status.HTTP_404_NOT_FOUND)
    credential = await store.get_credential(user_id)
    if credential is None:
        raise ServiceError("No credential has been issued for this user", status.HTTP_404_NOT_FOUND)
    password = generate_default_password()
    await store.reset_credential(user_id, password)
    return CredentialResetResponse(
        user_id=user_id,
        username=credential.username,
        default_password=password,
        password_changed=False,
    )
