"""
RosterStore: the persistence collaborator of the bulk import pipeline.

The pipeline only talks to this interface. SqlAlchemyRosterStore implements it over the
application database with one short-lived session per call, so every write commits on
its own and concurrent rows never share a session.
"""

import abc
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import status as http_status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.models import StaffProfile, StudentProfile, TeacherProfile, User, UserCredential
from app.auth.security import hash_password
from app.core.enums import ImportType, UploadStatus
from app.core.exceptions import DuplicateIdentityError, ServiceError, UsernameConflictError
from app.core.models import BulkUpload

from .schemas import Credential, Identity, IdentityFields


class RosterStore(abc.ABC):
    """Backend operations consumed by the import pipeline."""

    @abc.abstractmethod
    async def find_identity_by_email(self, tenant_id: UUID, email: str) -> Optional[Identity]:
        ...

    @abc.abstractmethod
    async def create_identity(self, tenant_id: UUID, fields: IdentityFields) -> Identity:
        """Raises DuplicateIdentityError when (tenant_id, email) already exists."""

    @abc.abstractmethod
    async def update_identity(self, identity_id: UUID, fields: IdentityFields) -> None:
        """Apply non-None fields to an existing identity."""

    @abc.abstractmethod
    async def username_exists(self, tenant_id: UUID, candidate: str) -> bool:
        ...

    @abc.abstractmethod
    async def create_credential(self, identity_id: UUID, username: str, password: str) -> None:
        """Raises UsernameConflictError when the username is taken in the identity's tenant."""

    @abc.abstractmethod
    async def get_credential(self, identity_id: UUID) -> Optional[Credential]:
        ...

    @abc.abstractmethod
    async def reset_credential(self, identity_id: UUID, password: str) -> None:
        """Issue a new default password; username is kept and password_changed is cleared."""

    @abc.abstractmethod
    async def upsert_role_record(self, identity_id: UUID, import_type: ImportType, fields: Dict[str, Any]) -> None:
        """Create the role record for identity_id, or overwrite its non-None fields."""

    @abc.abstractmethod
    async def create_upload_audit(
        self, tenant_id: UUID, import_type: ImportType, file_name: str, total_rows: int
    ) -> UUID:
        ...

    @abc.abstractmethod
    async def finalize_upload_audit(
        self,
        audit_id: UUID,
        status: UploadStatus,
        success_count: int,
        failure_count: int,
        errors: List[str],
        completed: bool = True,
    ) -> None:
        """Write final counts. completed=False keeps completed_at unset (cancelled batch)."""


ROLE_MODELS = {
    ImportType.STUDENTS: StudentProfile,
    ImportType.TEACHERS: TeacherProfile,
    ImportType.STAFF: StaffProfile,
}

# Role record field → column, where the names differ
ROLE_COLUMN_NAMES = {
    "student_id": "student_code",
    "employee_id": "employee_code",
}


def _user_to_identity(user: User) -> Identity:
    return Identity(
        id=user.id,
        tenant_id=user.tenant_id,
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        phone=user.mobile,
        gender=user.gender,
        date_of_birth=user.date_of_birth,
        address=user.address,
    )


def _identity_columns(fields: IdentityFields) -> Dict[str, Any]:
    values = fields.model_dump(exclude_none=True)
    if "phone" in values:
        values["mobile"] = values.pop("phone")
    if "role" in values:
        values["role"] = fields.role.value
    if "gender" in values:
        values["gender"] = fields.gender.value
    return values


class SqlAlchemyRosterStore(RosterStore):
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def find_identity_by_email(self, tenant_id: UUID, email: str) -> Optional[Identity]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(User).where(User.tenant_id == tenant_id, User.email == email.lower())
            )
            user = result.scalar_one_or_none()
            return _user_to_identity(user) if user else None

    async def create_identity(self, tenant_id: UUID, fields: IdentityFields) -> Identity:
        async with self._session_factory() as db:
            user = User(tenant_id=tenant_id, source="BULK_UPLOAD", **_identity_columns(fields))
            user.email = user.email.lower()
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise DuplicateIdentityError(fields.email)
            await db.refresh(user)
            return _user_to_identity(user)

    async def update_identity(self, identity_id: UUID, fields: IdentityFields) -> None:
        async with self._session_factory() as db:
            user = await self._get_user(db, identity_id)
            for column, value in _identity_columns(fields).items():
                if column == "email":
                    # Email is the lookup key; never rewritten by reconciliation
                    continue
                setattr(user, column, value)
            await db.commit()

    async def username_exists(self, tenant_id: UUID, candidate: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UserCredential.id).where(
                    UserCredential.tenant_id == tenant_id,
                    UserCredential.username == candidate,
                )
            )
            return result.first() is not None

    async def create_credential(self, identity_id: UUID, username: str, password: str) -> None:
        password_hash = await asyncio.to_thread(hash_password, password)
        async with self._session_factory() as db:
            user = await self._get_user(db, identity_id)
            tenant_id = user.tenant_id
            db.add(
                UserCredential(
                    tenant_id=tenant_id,
                    user_id=user.id,
                    username=username,
                    default_password=password,
                    password_changed=False,
                    is_active=True,
                )
            )
            user.password_hash = password_hash
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if await self.username_exists(tenant_id, username):
                    raise UsernameConflictError(username)
                raise ServiceError("Credential already exists for this user", http_status.HTTP_409_CONFLICT)

    async def get_credential(self, identity_id: UUID) -> Optional[Credential]:
        async with self._session_factory() as db:
            cred = await self._get_credential_row(db, identity_id)
            if not cred:
                return None
            return Credential(
                identity_id=cred.user_id,
                username=cred.username,
                default_password=cred.default_password,
                password_changed=cred.password_changed,
                is_active=cred.is_active,
            )

    async def reset_credential(self, identity_id: UUID, password: str) -> None:
        password_hash = await asyncio.to_thread(hash_password, password)
        async with self._session_factory() as db:
            cred = await self._get_credential_row(db, identity_id)
            if not cred:
                raise ServiceError("Credential not found", http_status.HTTP_404_NOT_FOUND)
            user = await self._get_user(db, identity_id)
            cred.default_password = password
            cred.password_changed = False
            cred.is_active = True
            user.password_hash = password_hash
            await db.commit()

    async def upsert_role_record(self, identity_id: UUID, import_type: ImportType, fields: Dict[str, Any]) -> None:
        model = ROLE_MODELS[ImportType(import_type)]
        columns = {ROLE_COLUMN_NAMES.get(k, k): v for k, v in fields.items() if v is not None}
        async with self._session_factory() as db:
            result = await db.execute(select(model).where(model.user_id == identity_id))
            record = result.scalar_one_or_none()
            if record is None:
                db.add(model(user_id=identity_id, **columns))
                try:
                    await db.commit()
                    return
                except IntegrityError:
                    # Created concurrently for the same user; fall through to update
                    await db.rollback()
                    result = await db.execute(select(model).where(model.user_id == identity_id))
                    record = result.scalar_one()
            for column, value in columns.items():
                setattr(record, column, value)
            await db.commit()

    async def create_upload_audit(
        self, tenant_id: UUID, import_type: ImportType, file_name: str, total_rows: int
    ) -> UUID:
        async with self._session_factory() as db:
            upload = BulkUpload(
                tenant_id=tenant_id,
                upload_type=ImportType(import_type).value,
                file_name=file_name,
                total_records=total_rows,
                status=UploadStatus.PROCESSING.value,
                error_log=[],
            )
            db.add(upload)
            await db.commit()
            return upload.id

    async def finalize_upload_audit(
        self,
        audit_id: UUID,
        status: UploadStatus,
        success_count: int,
        failure_count: int,
        errors: List[str],
        completed: bool = True,
    ) -> None:
        async with self._session_factory() as db:
            upload = await db.get(BulkUpload, audit_id)
            if not upload:
                raise ServiceError("Upload audit not found", http_status.HTTP_404_NOT_FOUND)
            upload.status = UploadStatus(status).value
            upload.successful_records = success_count
            upload.failed_records = failure_count
            upload.error_log = list(errors)
            if completed:
                upload.completed_at = datetime.utcnow()
            await db.commit()

    @staticmethod
    async def _get_user(db: AsyncSession, identity_id: UUID) -> User:
        user = await db.get(User, identity_id)
        if not user:
            raise ServiceError("Identity not found", http_status.HTTP_404_NOT_FOUND)
        return user

    @staticmethod
    async def _get_credential_row(db: AsyncSession, identity_id: UUID) -> Optional[UserCredential]:
        result = await db.execute(select(UserCredential).where(UserCredential.user_id == identity_id))
        return result.scalar_one_or_none()
