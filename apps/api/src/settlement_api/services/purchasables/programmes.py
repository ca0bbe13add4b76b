from __future__ import annotations

from datetime import datetime

from settlement_api.models.loyalty import LoyaltySourceEnum
from settlement_api.models.payment import PaymentableTypeEnum
from settlement_api.models.programme import ProgrammePurchase, ProgrammePurchaseStatusEnum
from .base import PurchasableHandler


class ProgrammePurchaseHandler(PurchasableHandler):
    kind = PaymentableTypeEnum.PROGRAMME
    model = ProgrammePurchase
    loyalty_source = LoyaltySourceEnum.PROGRAMME_PURCHASE
    activatable_from = frozenset({ProgrammePurchaseStatusEnum.PENDING})
    active_states = frozenset({ProgrammePurchaseStatusEnum.COMPLETE})
    cancelled_state = ProgrammePurchaseStatusEnum.CANCELLED

    def reward_points(self, purchasable: ProgrammePurchase) -> int:
        programme = purchasable.programme
        return int(programme.loyalty_points or 0) if programme is not None else 0

    def _apply_activation(self, purchasable: ProgrammePurchase, now: datetime) -> None:
        purchasable.status = ProgrammePurchaseStatusEnum.COMPLETE
        purchasable.purchased_at = now
