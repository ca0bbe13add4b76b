"""Single dispatch point from a payment's ``paymentable_type`` to its handler."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.payment import PaymentableTypeEnum
from .base import ActivationResult, PurchasableHandler, ReversalResult
from .orders import OrderHandler
from .programmes import ProgrammePurchaseHandler
from .subscriptions import SubscriptionHandler

DEFAULT_HANDLERS: Mapping[PaymentableTypeEnum, PurchasableHandler] = {
    PaymentableTypeEnum.ORDER: OrderHandler(),
    PaymentableTypeEnum.SUBSCRIPTION: SubscriptionHandler(),
    PaymentableTypeEnum.PROGRAMME: ProgrammePurchaseHandler(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchasableActivator:
    """Activate or reverse whatever a payment funds, inside the caller's transaction."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        handlers: Mapping[PaymentableTypeEnum, PurchasableHandler] | None = None,
    ) -> None:
        self._db = db
        self._handlers = dict(handlers or DEFAULT_HANDLERS)

    def handler_for(self, kind: PaymentableTypeEnum) -> PurchasableHandler:
        try:
            return self._handlers[PaymentableTypeEnum(kind)]
        except KeyError as exc:
            raise ValueError(f"No purchasable handler registered for {kind}") from exc

    async def load(self, kind: PaymentableTypeEnum, purchasable_id: UUID, *, lock: bool = False) -> Any:
        return await self.handler_for(kind).load(self._db, purchasable_id, lock=lock)

    async def activate(
        self,
        kind: PaymentableTypeEnum,
        purchasable_id: UUID,
        *,
        now: datetime | None = None,
    ) -> ActivationResult:
        handler = self.handler_for(kind)
        purchasable = await handler.load(self._db, purchasable_id)
        return await handler.activate(self._db, purchasable, now or _utcnow())

    async def reverse(
        self,
        kind: PaymentableTypeEnum,
        purchasable_id: UUID,
        *,
        now: datetime | None = None,
    ) -> ReversalResult:
        handler = self.handler_for(kind)
        purchasable = await handler.load(self._db, purchasable_id)
        return await handler.reverse(self._db, purchasable, now or _utcnow())


__all__ = ["DEFAULT_HANDLERS", "PurchasableActivator"]
