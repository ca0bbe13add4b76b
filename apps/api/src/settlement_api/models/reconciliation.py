from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from settlement_api.db.base import Base


class PaymentReconciliationRun(Base):
    """Audit row describing one reconciliation sweep."""

    __tablename__ = "payment_reconciliation_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    status = Column(String(16), nullable=False, default="running", server_default="running")
    triggered_by = Column(String(64), nullable=False, default="scheduler", server_default="scheduler")
    checked_count = Column(Integer, nullable=False, default=0, server_default="0")
    resolved_count = Column(Integer, nullable=False, default=0, server_default="0")
    failed_count = Column(Integer, nullable=False, default=0, server_default="0")
    exhausted_count = Column(Integer, nullable=False, default=0, server_default="0")
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
