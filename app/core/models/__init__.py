from app.core.models.tenant import Tenant
from app.core.models.bulk_upload import BulkUpload

__all__ = [
    "Tenant",
    "BulkUpload",
]
