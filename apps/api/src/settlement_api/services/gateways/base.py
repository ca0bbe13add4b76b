"""Gateway-neutral shapes shared by the concrete clients and webhook adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Protocol


class GatewayStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class GatewayPaymentStatus:
    """Current gateway view of a transaction."""

    transaction_id: str
    status: GatewayStatus
    raw_status: str | None = None
    amount: Decimal | None = None


@dataclass(slots=True)
class GatewayCaptureResult:
    transaction_id: str
    captured_amount: Decimal
    captured_at: datetime
    reference: str | None = None


@dataclass(slots=True)
class GatewayRefundResult:
    transaction_id: str
    refund_id: str
    amount: Decimal
    refunded_at: datetime


@dataclass(slots=True)
class GatewayEvent:
    """A webhook delivery normalized out of the gateway's native envelope."""

    event_id: str
    event_type: str
    status: GatewayStatus
    transaction_id: str | None = None
    reference: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGatewayClient(Protocol):
    """Remote calls the engine needs. Every failure surfaces as ``TransientGatewayError``."""

    name: str

    async def get_payment(self, transaction_id: str) -> GatewayPaymentStatus:
        ...

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> GatewayCaptureResult:
        ...

    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        *,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        ...


class WebhookAdapter(Protocol):
    """Verifies and parses one gateway's webhook envelope."""

    @property
    def has_secret(self) -> bool:
        ...

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        """Return ``True`` when verified, ``False`` when no secret is configured.

        Raises ``WebhookSignatureError`` for a missing or invalid signature.
        """

    def parse(self, raw_body: bytes) -> GatewayEvent | None:
        ...
