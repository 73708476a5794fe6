"""
Upload audit for bulk roster imports. One row per batch: created in status processing
before any row is attempted, finalized once at the end.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.session import Base


class BulkUpload(Base):
    __tablename__ = "bulk_uploads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    # students | teachers | staff
    upload_type = Column(String(20), nullable=False)
    file_name = Column(String(255), nullable=False)
    total_records = Column(Integer, nullable=False, default=0)
    successful_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)
    # processing | completed | failed
    status = Column(String(20), nullable=False, default="processing")
    # Ordered list of "Row N: message" strings
    error_log = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    tenant = relationship("Tenant", back_populates="bulk_uploads")
