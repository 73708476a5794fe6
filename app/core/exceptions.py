from typing import Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BulkUploadError(ServiceError):
    """Base exception for the bulk roster import pipeline."""


class UnsupportedFormatError(BulkUploadError):
    """File extension is not csv/xls/xlsx, or the bytes cannot be read as such. Batch-fatal."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class EmptyFileError(BulkUploadError):
    """No data rows follow the header. Batch-fatal."""

    def __init__(self, message: str = "File has no data rows") -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class RowValidationError(BulkUploadError):
    """One row failed schema validation. Row-scoped."""

    def __init__(self, row_number: int, field: Optional[str], reason: str) -> None:
        super().__init__(reason, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.row_number = row_number
        self.field = field
        self.reason = reason


class PersistenceError(BulkUploadError):
    """A store write for one row failed. `step` names the sub-step that failed."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step} failed: {message}", status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.step = step
        self.cause_message = message
        # Set when the identity was already saved before this step failed
        self.identity = None
        self.identity_created: Optional[bool] = None


class UsernameConflictError(BulkUploadError):
    """Raised by a store when (tenant_id, username) is already taken."""

    def __init__(self, username: str) -> None:
        super().__init__(f"Username already exists for this tenant: {username}", status.HTTP_409_CONFLICT)
        self.username = username


class DuplicateIdentityError(BulkUploadError):
    """Raised by a store when (tenant_id, email) is already taken."""

    def __init__(self, email: str) -> None:
        super().__init__(f"Email already exists for this tenant: {email}", status.HTTP_409_CONFLICT)
        self.email = email


class AuditPersistenceError(BulkUploadError):
    """Upload audit row could not be written. Logged, never propagated to the caller."""
