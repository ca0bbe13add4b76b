from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from settlement_api.db.base import Base, enum_values


class WebhookGatewayEnum(str, Enum):
    STRIPE = "stripe"
    INSTALLMENTS = "installments"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    gateway = Column(SqlEnum(WebhookGatewayEnum, values_callable=enum_values, name="webhook_gateway_enum"), nullable=False)
    external_id = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    transaction_id = Column(String, nullable=True, index=True)
    verified = Column(Boolean, nullable=False, default=False, server_default="false")
    result = Column(String(32), nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("gateway", "external_id", name="uq_webhook_events_gateway_external"),
    )
