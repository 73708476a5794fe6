"""
Upload audit recording for bulk imports. Written at batch start and at batch end.
A failing audit write is logged and never changes the batch result returned to the caller.
"""

import logging
from typing import List, Optional
from uuid import UUID

from app.core.enums import ImportType, UploadStatus
from app.core.exceptions import AuditPersistenceError

from .store import RosterStore

logger = logging.getLogger(__name__)


async def start_upload_audit(
    store: RosterStore,
    tenant_id: UUID,
    import_type: ImportType,
    file_name: str,
    total_rows: int,
) -> Optional[UUID]:
    """Create the audit row in status processing. Returns None if it could not be written."""
    try:
        return await store.create_upload_audit(tenant_id, import_type, file_name, total_rows)
    except Exception as e:
        err = AuditPersistenceError(f"Could not create upload audit for {file_name}: {e}")
        logger.exception(err.message)
        return None


async def finalize_upload_audit(
    store: RosterStore,
    audit_id: Optional[UUID],
    status: UploadStatus,
    success_count: int,
    failure_count: int,
    errors: List[str],
    *,
    completed: bool = True,
) -> bool:
    """Write final counts to the audit row. Returns False if nothing was written."""
    if audit_id is None:
        return False
    try:
        await store.finalize_upload_audit(
            audit_id, status, success_count, failure_count, errors, completed=completed
        )
        return True
    except Exception as e:
        err = AuditPersistenceError(f"Could not finalize upload audit {audit_id}: {e}")
        logger.exception(err.message)
        return False
