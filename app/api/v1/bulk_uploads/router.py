from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.enums import IdentityRole, ImportType, UploadStatus
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import (
    BatchReport,
    BulkUploadResponse,
    CredentialGenerateResponse,
    CredentialResetResponse,
    CredentialResponse,
    CredentialStatusUpdate,
)
from .store import RosterStore
from .templates import build_error_report, build_upload_template
from . import service

router = APIRouter(prefix="/api/v1/bulk-uploads", tags=["bulk-uploads"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.post(
    "",
    response_model=BatchReport,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("bulk_uploads", "create"))],
)
async def upload_roster(
    file: UploadFile = File(..., description="Roster file (.csv, .xls or .xlsx); first row is the header"),
    upload_type: ImportType = Form(..., description="students, teachers or staff"),
    reset_credentials: bool = Form(False, description="Issue new default passwords for existing users"),
    store: RosterStore = Depends(service.get_roster_store),
    current_user: CurrentUser = Depends(get_current_user),
) -> BatchReport:
    """
    Import a roster file for the current tenant. Every row is attempted; failed rows are
    listed in `errors` with their row number and reason. Re-uploading the same file is safe.
    An unreadable file returns 400 and is still recorded in the upload history.
    """
    content = await file.read()
    report = await service.run_import_batch(
        store,
        content,
        upload_type,
        current_user.tenant_id,
        file_name=file.filename or "",
        reset_credentials=reset_credentials,
    )
    if report.status == UploadStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=report.errors[0].message if report.errors else "Upload failed",
        )
    return report


@router.get(
    "",
    response_model=List[BulkUploadResponse],
    dependencies=[Depends(check_permission("bulk_uploads", "read"))],
)
async def list_bulk_uploads(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[BulkUploadResponse]:
    """Upload history for the current tenant, newest first."""
    return await service.list_uploads(db, current_user.tenant_id)


@router.get(
    "/template/{upload_type}",
    dependencies=[Depends(check_permission("bulk_uploads", "read"))],
)
async def download_upload_template(upload_type: ImportType) -> Response:
    """Download an Excel template with the columns accepted for this upload type."""
    return Response(
        content=build_upload_template(upload_type),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={upload_type.value}_upload_template.xlsx"},
    )


@router.get(
    "/credentials",
    response_model=List[CredentialResponse],
    dependencies=[Depends(check_permission("bulk_uploads", "read"))],
)
async def list_credentials(
    role: Optional[IdentityRole] = Query(None, description="student, teacher or admin"),
    search: Optional[str] = Query(None, description="Matches name, email or username"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[CredentialResponse]:
    """Usernames and default passwords issued to the tenant's users."""
    return await service.list_credentials(db, current_user.tenant_id, role=role, search=search)


@router.get(
    "/credentials/export",
    dependencies=[Depends(check_permission("bulk_uploads", "read"))],
)
async def export_credentials(
    role: Optional[IdentityRole] = Query(None),
    search: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> Response:
    """Download the (filtered) credential list as CSV."""
    credentials = await service.list_credentials(db, current_user.tenant_id, role=role, search=search)
    return Response(
        content=service.export_credentials_csv(credentials),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=user_credentials.csv"},
    )


@router.post(
    "/credentials/generate",
    response_model=CredentialGenerateResponse,
    dependencies=[Depends(check_permission("bulk_uploads", "create"))],
)
async def generate_credentials(
    db: AsyncSession = Depends(get_db),
    store: RosterStore = Depends(service.get_roster_store),
    current_user: CurrentUser = Depends(get_current_user),
) -> CredentialGenerateResponse:
    """Issue credentials to every student, teacher and admin of the tenant that has none."""
    return await service.generate_missing_credentials(db, store, current_user.tenant_id)


@router.patch(
    "/credentials/{user_id}",
    response_model=CredentialResponse,
    dependencies=[Depends(check_permission("bulk_uploads", "update"))],
)
async def update_credential_status(
    user_id: UUID,
    payload: CredentialStatusUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> CredentialResponse:
    """Activate or deactivate a user's credential."""
    try:
        return await service.set_credential_active(db, current_user.tenant_id, user_id, payload.is_active)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/credentials/{user_id}/reset",
    response_model=CredentialResetResponse,
    dependencies=[Depends(check_permission("bulk_uploads", "update"))],
)
async def reset_credential(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    store: RosterStore = Depends(service.get_roster_store),
    current_user: CurrentUser = Depends(get_current_user),
) -> CredentialResetResponse:
    try:
        return await service.reset_user_credential(db, store, current_user.tenant_id, user_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/{upload_id}",
    response_model=BulkUploadResponse,
    dependencies=[Depends(check_permission("bulk_uploads", "read"))],
)
async def get_bulk_upload(
    upload_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> BulkUploadResponse:
    upload = await service.get_upload(db, current_user.tenant_id, upload_id)
    if not upload:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
    return upload


@router.get(
    "/{upload_id}/errors",
    dependencies=[Depends(check_permission("bulk_uploads", "read"))],
)
async def download_upload_errors(
    upload_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> Response:
    """Download the failed rows of an upload as an Excel file (row, reason)."""
    upload = await service.get_upload(db, current_user.tenant_id, upload_id)
    if not upload:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
    return Response(
        content=build_error_report(upload.error_log),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename=upload_{upload_id}_errors.xlsx"},
    )
