"""Typed view of the free-form ``payments.metadata`` column.

Every sub-record is optional and every model keeps unknown keys, so rows
written by older code (or by hand during an incident) survive a round trip.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class _MetadataModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class GatewayState(_MetadataModel):
    status: str | None = None
    last_event_id: str | None = None
    last_event_type: str | None = None
    verified: bool | None = None
    captured: bool | None = None
    updated_at: datetime | None = None


class ReconciliationState(_MetadataModel):
    attempts: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    exhausted: bool = False


class DecisionRecord(_MetadataModel):
    decision: str
    decided_by: str | None = None
    note: str | None = None
    decided_at: datetime | None = None


class CouponState(_MetadataModel):
    coupon_id: str | None = None
    limit_exceeded: bool = False
    limit_reason: str | None = None
    refund_required: bool = False
    rollback_error: str | None = None


class RefundRecord(_MetadataModel):
    reason: str | None = None
    reference: str | None = None
    refunded_by: str | None = None
    refunded_at: datetime | None = None


class PaymentMetadata(_MetadataModel):
    gateway_state: GatewayState | None = None
    reconciliation: ReconciliationState = Field(default_factory=ReconciliationState)
    decision: DecisionRecord | None = None
    coupon: CouponState | None = None
    refund: RefundRecord | None = None
    failure_reason: str | None = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def with_gateway_state(self, **changes: Any) -> "PaymentMetadata":
        current = self.gateway_state or GatewayState()
        return self.model_copy(update={"gateway_state": current.model_copy(update=changes)})

    def with_reconciliation(self, **changes: Any) -> "PaymentMetadata":
        return self.model_copy(update={"reconciliation": self.reconciliation.model_copy(update=changes)})

    def with_coupon(self, **changes: Any) -> "PaymentMetadata":
        current = self.coupon or CouponState()
        return self.model_copy(update={"coupon": current.model_copy(update=changes)})


__all__ = [
    "CouponState",
    "DecisionRecord",
    "GatewayState",
    "PaymentMetadata",
    "ReconciliationState",
    "RefundRecord",
]
