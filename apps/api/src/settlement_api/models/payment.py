"""Payment records and their state audit trail."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from settlement_api.db.base import Base, enum_values
from settlement_api.schemas.payment_metadata import PaymentMetadata
from .currency import CurrencyEnum


class PaymentStatusEnum(str, Enum):
    PENDING = "pending"
    PENDING_VERIFICATION = "pending_verification"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethodEnum(str, Enum):
    CARD = "card"
    GATEWAY_INSTALLMENT = "gateway_installment"
    MANUAL_PROOF = "manual_proof"
    WALLET_POINTS = "wallet_points"


class PaymentableTypeEnum(str, Enum):
    ORDER = "order"
    SUBSCRIPTION = "subscription"
    PROGRAMME = "programme"


GATEWAY_METHODS = frozenset({PaymentMethodEnum.CARD, PaymentMethodEnum.GATEWAY_INSTALLMENT})
PROOF_METHODS = frozenset({PaymentMethodEnum.MANUAL_PROOF})
OPEN_STATUSES = frozenset({PaymentStatusEnum.PENDING, PaymentStatusEnum.PENDING_VERIFICATION})


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_status_created_at", "status", "created_at"),
        Index("ix_payments_paymentable", "paymentable_type", "paymentable_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(
        SqlEnum(CurrencyEnum, values_callable=enum_values, name="currency_enum"),
        nullable=False,
        server_default=CurrencyEnum.EGP.value,
    )
    method = Column(SqlEnum(PaymentMethodEnum, values_callable=enum_values, name="payment_method_enum"), nullable=False)
    status = Column(
        SqlEnum(PaymentStatusEnum, values_callable=enum_values, name="payment_status_enum"),
        nullable=False,
        default=PaymentStatusEnum.PENDING,
        server_default=PaymentStatusEnum.PENDING.value,
    )
    paymentable_type = Column(SqlEnum(PaymentableTypeEnum, values_callable=enum_values, name="paymentable_type_enum"), nullable=False)
    paymentable_id = Column(UUID(as_uuid=True), nullable=False)
    transaction_id = Column(String, nullable=True, unique=True)
    payment_reference = Column(String, nullable=False, unique=True)
    proof_url = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    needs_coupon_rollback = Column(Boolean, nullable=False, default=False, server_default="false", index=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def meta(self) -> PaymentMetadata:
        """Typed view over the metadata column."""

        return PaymentMetadata.model_validate(self.metadata_json or {})

    @meta.setter
    def meta(self, value: PaymentMetadata) -> None:
        # Assign a fresh dict so the JSON column registers the change.
        self.metadata_json = value.to_json()

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class PaymentStateActorEnum(str, Enum):
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    ADMIN = "admin"
    MEMBER = "member"
    SYSTEM = "system"


class PaymentStateEvent(Base):
    """Audit row written for every payment status change."""

    __tablename__ = "payment_state_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    payment_id = Column(UUID(as_uuid=True), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    outcome = Column(String(32), nullable=True)
    actor_type = Column(SqlEnum(PaymentStateActorEnum, values_callable=enum_values, name="payment_state_actor_enum"), nullable=False)
    actor_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "from_status": self.from_status,
            "to_status": self.to_status,
            "outcome": self.outcome,
            "actor_type": self.actor_type.value if self.actor_type else None,
            "actor_id": self.actor_id,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
