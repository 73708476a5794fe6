from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import List, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.core.enums import Gender, IdentityRole, ImportType, RowStatus, UploadStatus


# ----- Parsed rows -----
@dataclass(frozen=True)
class ImportRow:
    """One source record. row_number is the 1-based data row position (header not counted)."""

    row_number: int
    raw_fields: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Read-only view over a private copy; never mutated after parsing
        object.__setattr__(self, "raw_fields", MappingProxyType(dict(self.raw_fields)))


# ----- Validated candidates -----
def _parse_iso_date(value):
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValueError(f"expected an ISO date (YYYY-MM-DD), got '{value}'")


def _normalize_gender(value):
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized in ("male", "m"):
        return Gender.MALE
    if normalized in ("female", "f"):
        return Gender.FEMALE
    return Gender.OTHER


class CandidateBase(BaseModel):
    """Fields shared by every roster type. Built only by the row validator."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)
    gender: Optional[Gender] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = None

    class Config:
        frozen = True

    @field_validator("email", mode="after")
    @classmethod
    def _lowercase_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("gender", mode="before")
    @classmethod
    def _gender(cls, value):
        return _normalize_gender(value)

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def _date_of_birth(cls, value):
        return _parse_iso_date(value)


class StudentCandidate(CandidateBase):
    student_id: Optional[str] = Field(None, max_length=50)
    admission_date: Optional[date] = None
    parent_name: Optional[str] = Field(None, max_length=255)
    parent_phone: Optional[str] = Field(None, max_length=50)
    parent_email: Optional[EmailStr] = None
    medical_info: Optional[str] = None

    @field_validator("admission_date", mode="before")
    @classmethod
    def _admission_date(cls, value):
        return _parse_iso_date(value)


class TeacherCandidate(CandidateBase):
    employee_id: Optional[str] = Field(None, max_length=50)
    hire_date: Optional[date] = None
    salary: Optional[Decimal] = Field(None, ge=0)
    qualification: Optional[str] = Field(None, max_length=255)
    specialization: Optional[str] = Field(None, max_length=255)

    @field_validator("hire_date", mode="before")
    @classmethod
    def _hire_date(cls, value):
        return _parse_iso_date(value)


class StaffCandidate(CandidateBase):
    employee_id: Optional[str] = Field(None, max_length=50)
    hire_date: Optional[date] = None
    salary: Optional[Decimal] = Field(None, ge=0)
    position: Optional[str] = Field(None, max_length=100)

    @field_validator("hire_date", mode="before")
    @classmethod
    def _hire_date(cls, value):
        return _parse_iso_date(value)


ValidatedCandidate = Union[StudentCandidate, TeacherCandidate, StaffCandidate]

CANDIDATE_TYPES = {
    ImportType.STUDENTS: StudentCandidate,
    ImportType.TEACHERS: TeacherCandidate,
    ImportType.STAFF: StaffCandidate,
}


# ----- Identity / credential (store records) -----
class IdentityFields(BaseModel):
    """Writable identity fields. On update only non-None values are applied."""

    first_name: str
    last_name: str
    email: str
    role: IdentityRole
    is_active: bool = True
    phone: Optional[str] = None
    gender: Optional[Gender] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = None


class Identity(BaseModel):
    id: UUID
    tenant_id: UUID
    first_name: str
    last_name: str
    email: str
    role: str
    is_active: bool = True
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    address: Optional[str] = None


class Credential(BaseModel):
    identity_id: UUID
    username: str
    default_password: str
    password_changed: bool = False
    is_active: bool = True


# ----- Batch results -----
class RowOutcome(BaseModel):
    row_number: int = Field(..., ge=1, description="1-based data row in the uploaded file")
    status: RowStatus
    identity_id: Optional[UUID] = None
    created: Optional[bool] = Field(None, description="True when a new identity was created for this row")
    username: Optional[str] = Field(None, description="Username provisioned for a new identity")
    credential_reset: bool = Field(False, description="True when the default password was reissued for this row")
    message: Optional[str] = None


class BatchError(BaseModel):
    row_number: int = Field(..., ge=0, description="0 for batch-level errors (unreadable file)")
    message: str


class BatchReport(BaseModel):
    """Result of one import batch. status=failed only when no row could be attempted."""

    upload_id: Optional[UUID] = Field(None, description="Audit row id; null if the audit could not be written")
    import_type: ImportType
    total_rows: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: List[BatchError] = Field(default_factory=list)
    outcomes: List[RowOutcome] = Field(default_factory=list)
    status: UploadStatus
    cancelled: bool = False

    def error_log(self) -> List[str]:
        """Errors in the persisted audit shape: 'Row N: message'."""
        return [
            f"Row {e.row_number}: {e.message}" if e.row_number else e.message
            for e in self.errors
        ]


# ----- HTTP responses -----
class BulkUploadResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    upload_type: str
    file_name: str
    total_records: int
    successful_records: int
    failed_records: int
    status: str
    error_log: List[str] = Field(default_factory=list)
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CredentialResponse(BaseModel):
    """Credential listing row. default_password is a first-login placeholder, shown to admins."""

    user_id: UUID
    full_name: str
    email: str
    role: str
    username: str
    default_password: str
    password_changed: bool
    is_active: bool


class CredentialResetResponse(BaseModel):
    user_id: UUID
    username: str
    default_password: str
    password_changed: bool = False


class CredentialStatusUpdate(BaseModel):
    is_active: bool = Field(..., description="False blocks login with this credential")


class CredentialGenerateResponse(BaseModel):
    generated: int
    credentials: List[CredentialResetResponse] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list, description="One line per user that could not be provisioned")
