"""Bounded worker pool for best-effort work scheduled after a payment commits.

Nothing here can reopen the financial transaction: failures are logged with
the payment and purchasable identifiers so they can be replayed by hand.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from settlement_api.db.session import SessionFactory, ensure_session
from settlement_api.models.order import Order, OrderStatusEnum
from settlement_api.observability.payments import get_payment_store
from settlement_api.services.notifications import NotificationDispatcher
from settlement_api.services.shipping import ShipmentClient

NOTIFY = "notify"
SHIPMENT = "shipment"


@dataclass(slots=True)
class SideEffect:
    kind: str
    payment_id: UUID
    purchasable_id: UUID | None = None
    event_kind: str | None = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def notification(cls, event_kind: str, payment_id: UUID, payload: Dict[str, Any]) -> "SideEffect":
        return cls(kind=NOTIFY, payment_id=payment_id, event_kind=event_kind, payload=payload)

    @classmethod
    def shipment(cls, payment_id: UUID, order_id: UUID) -> "SideEffect":
        return cls(kind=SHIPMENT, payment_id=payment_id, purchasable_id=order_id)


class SideEffectDispatcher:
    """Runs side effects on N worker tasks fed by a bounded queue.

    While stopped (tests, CLI runs) effects execute inline on submit.
    """

    def __init__(
        self,
        *,
        notifier: NotificationDispatcher,
        shipment_client: ShipmentClient,
        session_factory: SessionFactory | None = None,
        workers: int = 4,
        queue_size: int = 200,
    ) -> None:
        self._notifier = notifier
        self._shipment_client = shipment_client
        self._session_factory = session_factory
        self._worker_count = max(workers, 1)
        self._queue_size = max(queue_size, 1)
        self._queue: asyncio.Queue[SideEffect | None] | None = None
        self._tasks: list[asyncio.Task] = []
        self._observability = get_payment_store()

    @property
    def notifier(self) -> NotificationDispatcher:
        return self._notifier

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"side-effect-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("Side-effect dispatcher started", workers=self._worker_count, queue_size=self._queue_size)

    async def stop(self) -> None:
        """Drain queued effects, then stop the workers."""

        if not self._tasks or self._queue is None:
            return
        for _ in self._tasks:
            await self._queue.put(None)
        await asyncio.gather(*self._tasks)
        self._tasks = []
        self._queue = None
        logger.info("Side-effect dispatcher stopped")

    async def submit(self, effects: Iterable[SideEffect]) -> None:
        for effect in effects:
            if self._queue is None:
                await self.run(effect)
                continue
            try:
                self._queue.put_nowait(effect)
            except asyncio.QueueFull:
                logger.warning(
                    "Side-effect queue full; running inline",
                    kind=effect.kind,
                    payment_id=str(effect.payment_id),
                )
                await self.run(effect)

    async def run(self, effect: SideEffect) -> bool:
        try:
            if effect.kind == NOTIFY:
                await self._notifier.notify(effect.event_kind or "payment.updated", effect.payload)
            elif effect.kind == SHIPMENT:
                await self._create_shipment(effect)
            else:
                raise ValueError(f"Unknown side effect kind: {effect.kind}")
        except Exception as exc:
            self._observability.record_side_effect(effect.kind, success=False)
            logger.exception(
                "Side effect failed",
                kind=effect.kind,
                event_kind=effect.event_kind,
                payment_id=str(effect.payment_id),
                purchasable_id=str(effect.purchasable_id) if effect.purchasable_id else None,
                error=str(exc),
            )
            return False
        self._observability.record_side_effect(effect.kind, success=True)
        return True

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            effect = await queue.get()
            try:
                if effect is None:
                    return
                await self.run(effect)
            finally:
                queue.task_done()

    async def _create_shipment(self, effect: SideEffect) -> None:
        if effect.purchasable_id is None:
            raise ValueError("Shipment side effect requires an order id")

        receipt = await self._shipment_client.create_shipment_for_order(effect.purchasable_id)
        logger.info(
            "Shipment requested",
            payment_id=str(effect.payment_id),
            purchasable_id=str(effect.purchasable_id),
            reference=receipt.reference,
        )
        if not receipt.reference or self._session_factory is None:
            return

        session = await ensure_session(self._session_factory)
        async with session as managed_session:
            order = await managed_session.get(Order, effect.purchasable_id, with_for_update=True)
            if order is None or order.status != OrderStatusEnum.PAID:
                logger.warning(
                    "Order no longer paid; shipment reference not stored",
                    purchasable_id=str(effect.purchasable_id),
                    reference=receipt.reference,
                    status=order.status.value if order is not None else None,
                )
                return
            order.status = OrderStatusEnum.SHIPPED
            order.shipment_reference = receipt.reference
            order.shipped_at = datetime.now(timezone.utc)
            await managed_session.commit()


__all__ = ["NOTIFY", "SHIPMENT", "SideEffect", "SideEffectDispatcher"]
