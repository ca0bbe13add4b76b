from __future__ import annotations

from datetime import datetime, timedelta

from settlement_api.models.loyalty import LoyaltySourceEnum
from settlement_api.models.payment import PaymentableTypeEnum
from settlement_api.models.subscription import Subscription, SubscriptionStatusEnum
from .base import PurchasableHandler


class SubscriptionHandler(PurchasableHandler):
    kind = PaymentableTypeEnum.SUBSCRIPTION
    model = Subscription
    loyalty_source = LoyaltySourceEnum.SUBSCRIPTION_PURCHASE
    activatable_from = frozenset({SubscriptionStatusEnum.PENDING})
    active_states = frozenset({SubscriptionStatusEnum.ACTIVE, SubscriptionStatusEnum.EXPIRED})
    cancelled_state = SubscriptionStatusEnum.CANCELLED

    def reward_points(self, purchasable: Subscription) -> int:
        plan = purchasable.plan
        return int(plan.loyalty_points or 0) if plan is not None else 0

    def _apply_activation(self, purchasable: Subscription, now: datetime) -> None:
        purchasable.status = SubscriptionStatusEnum.ACTIVE
        purchasable.start_date = now
        purchasable.end_date = now + timedelta(days=int(purchasable.period_days) + int(purchasable.gift_days or 0))
