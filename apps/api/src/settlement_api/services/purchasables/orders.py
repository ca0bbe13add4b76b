from __future__ import annotations

from datetime import datetime

from loguru import logger

from settlement_api.models.loyalty import LoyaltySourceEnum
from settlement_api.models.order import Order, OrderStatusEnum
from settlement_api.models.payment import PaymentableTypeEnum
from .base import PurchasableHandler


class OrderHandler(PurchasableHandler):
    kind = PaymentableTypeEnum.ORDER
    model = Order
    loyalty_source = LoyaltySourceEnum.ORDER_PURCHASE
    activatable_from = frozenset({OrderStatusEnum.PENDING})
    active_states = frozenset({OrderStatusEnum.PAID, OrderStatusEnum.SHIPPED, OrderStatusEnum.DELIVERED})
    cancelled_state = OrderStatusEnum.CANCELLED
    requires_shipment = True

    def reward_points(self, purchasable: Order) -> int:
        return sum(int(item.loyalty_points or 0) * int(item.quantity or 0) for item in purchasable.items)

    def _apply_activation(self, purchasable: Order, now: datetime) -> None:
        purchasable.status = OrderStatusEnum.PAID
        purchasable.paid_at = now

    def _apply_reversal(self, purchasable: Order, now: datetime) -> list[str]:
        limitations = super()._apply_reversal(purchasable, now)
        if purchasable.status in {OrderStatusEnum.SHIPPED, OrderStatusEnum.DELIVERED}:
            # Goods already left the warehouse; only the order record is cancelled.
            note = f"shipment {purchasable.shipment_reference or 'unknown'} not recalled"
            limitations.append(note)
            purchasable.notes = f"{purchasable.notes}\n{note}" if purchasable.notes else note
            logger.warning(
                "Cancelled order was already shipped; shipment is not recalled",
                purchasable_id=str(purchasable.id),
                order_number=purchasable.order_number,
                status=purchasable.status.value,
                shipment_reference=purchasable.shipment_reference,
            )
        return limitations
