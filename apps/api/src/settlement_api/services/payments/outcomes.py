from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from settlement_api.models.payment import PaymentStateActorEnum, PaymentStatusEnum


class PaymentOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def target_status(self) -> PaymentStatusEnum:
        if self is PaymentOutcome.APPROVED:
            return PaymentStatusEnum.SUCCESS
        return PaymentStatusEnum.FAILED


@dataclass(frozen=True, slots=True)
class Actor:
    """Who asked for a transition; persisted on every state event."""

    kind: PaymentStateActorEnum
    id: str | None = None

    @classmethod
    def webhook(cls, event_id: str | None = None) -> "Actor":
        return cls(PaymentStateActorEnum.WEBHOOK, event_id)

    @classmethod
    def reconciliation(cls, run_id: str | None = None) -> "Actor":
        return cls(PaymentStateActorEnum.RECONCILIATION, run_id)

    @classmethod
    def admin(cls, admin_id: str) -> "Actor":
        return cls(PaymentStateActorEnum.ADMIN, admin_id)

    @classmethod
    def member(cls, user_id: str) -> "Actor":
        return cls(PaymentStateActorEnum.MEMBER, user_id)

    @classmethod
    def system(cls, label: str | None = None) -> "Actor":
        return cls(PaymentStateActorEnum.SYSTEM, label)

    @property
    def is_admin(self) -> bool:
        return self.kind is PaymentStateActorEnum.ADMIN


__all__ = ["Actor", "PaymentOutcome"]
