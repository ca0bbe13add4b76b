"""Error taxonomy shared by the settlement engine and its entry points."""

from __future__ import annotations

from uuid import UUID


class SettlementError(RuntimeError):
    """Base error for payment settlement failures."""


class PaymentValidationError(SettlementError):
    """Required payment-method evidence is missing; raised before any mutation."""


class ConflictingStateError(SettlementError):
    """Operation requested from a state that does not allow it. Never auto-retried."""

    def __init__(self, message: str, *, current: str | None = None, requested: str | None = None) -> None:
        super().__init__(message)
        self.current = current
        self.requested = requested


class LimitExceededError(SettlementError):
    """A coupon cap was reached at redemption time."""

    def __init__(self, message: str, *, coupon_id: UUID | None = None, scope: str = "global") -> None:
        super().__init__(message)
        self.coupon_id = coupon_id
        self.scope = scope


class InsufficientPointsError(SettlementError):
    """Loyalty balance too low for the requested spend."""


class TransientGatewayError(SettlementError):
    """Gateway call failed; the reconciliation sweep retries it a bounded number of times."""


class ReconciliationExhaustedError(SettlementError):
    """Retry attempts used up; an operator has to look at the payment."""

    def __init__(self, payment_id: UUID, attempts: int, last_error: str | None) -> None:
        super().__init__(f"Reconciliation exhausted for payment {payment_id} after {attempts} attempts")
        self.payment_id = payment_id
        self.attempts = attempts
        self.last_error = last_error


class PaymentNotFoundError(SettlementError):
    """No payment with the given identifier."""


class PurchasableNotFoundError(SettlementError):
    """The payment points at a purchasable row that does not exist."""


class WebhookSignatureError(SettlementError):
    """Webhook signature missing or invalid while a secret is configured."""


__all__ = [
    "ConflictingStateError",
    "InsufficientPointsError",
    "LimitExceededError",
    "PaymentNotFoundError",
    "PaymentValidationError",
    "PurchasableNotFoundError",
    "ReconciliationExhaustedError",
    "SettlementError",
    "TransientGatewayError",
    "WebhookSignatureError",
]
