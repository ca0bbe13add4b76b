"""Shared contract for the purchasable kinds a payment can fund."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.loyalty import LoyaltySourceEnum
from settlement_api.models.payment import PaymentableTypeEnum
from settlement_api.services.exceptions import ConflictingStateError, PurchasableNotFoundError


@dataclass(slots=True)
class ActivationResult:
    kind: PaymentableTypeEnum
    purchasable_id: UUID
    user_id: UUID
    previous_status: str
    status: str
    reward_points: int
    loyalty_source: LoyaltySourceEnum
    coupon_id: UUID | None
    requires_shipment: bool = False


@dataclass(slots=True)
class ReversalResult:
    kind: PaymentableTypeEnum
    purchasable_id: UUID
    user_id: UUID
    previous_status: str
    status: str
    was_active: bool
    changed: bool
    reward_points: int
    loyalty_source: LoyaltySourceEnum
    coupon_id: UUID | None
    limitations: list[str] = field(default_factory=list)


class PurchasableHandler(ABC):
    """Lifecycle rules for one purchasable kind.

    Subclasses declare their states; the base class enforces the whitelist
    before touching the row so a refused activation leaves it untouched.
    """

    kind: ClassVar[PaymentableTypeEnum]
    model: ClassVar[Any]
    loyalty_source: ClassVar[LoyaltySourceEnum]
    activatable_from: ClassVar[frozenset[Any]]
    active_states: ClassVar[frozenset[Any]]
    cancelled_state: ClassVar[Any]
    requires_shipment: ClassVar[bool] = False

    async def load(self, db: AsyncSession, purchasable_id: UUID, *, lock: bool = True) -> Any:
        stmt = (
            select(self.model)
            .where(self.model.id == purchasable_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update(of=self.model)
        result = await db.execute(stmt)
        purchasable = result.scalars().first()
        if purchasable is None:
            raise PurchasableNotFoundError(f"{self.kind.value} {purchasable_id} not found")
        return purchasable

    async def activate(self, db: AsyncSession, purchasable: Any, now: datetime) -> ActivationResult:
        previous = purchasable.status
        if previous not in self.activatable_from:
            raise ConflictingStateError(
                f"Cannot activate {self.kind.value} {purchasable.id} from {previous.value}",
                current=previous.value,
                requested="activate",
            )

        self._apply_activation(purchasable, now)
        await db.flush()
        logger.info(
            "Purchasable activated",
            kind=self.kind.value,
            purchasable_id=str(purchasable.id),
            from_status=previous.value,
            to_status=purchasable.status.value,
        )
        return ActivationResult(
            kind=self.kind,
            purchasable_id=purchasable.id,
            user_id=purchasable.user_id,
            previous_status=previous.value,
            status=purchasable.status.value,
            reward_points=self.reward_points(purchasable),
            loyalty_source=self.loyalty_source,
            coupon_id=purchasable.coupon_id,
            requires_shipment=self.requires_shipment,
        )

    async def reverse(self, db: AsyncSession, purchasable: Any, now: datetime) -> ReversalResult:
        previous = purchasable.status
        was_active = previous in self.active_states
        limitations: list[str] = []

        changed = previous != self.cancelled_state
        if changed:
            limitations = self._apply_reversal(purchasable, now)
            purchasable.status = self.cancelled_state
            await db.flush()
            logger.info(
                "Purchasable reversed",
                kind=self.kind.value,
                purchasable_id=str(purchasable.id),
                from_status=previous.value,
                to_status=purchasable.status.value,
                was_active=was_active,
            )

        return ReversalResult(
            kind=self.kind,
            purchasable_id=purchasable.id,
            user_id=purchasable.user_id,
            previous_status=previous.value,
            status=purchasable.status.value,
            was_active=was_active,
            changed=changed,
            reward_points=self.reward_points(purchasable),
            loyalty_source=self.loyalty_source,
            coupon_id=purchasable.coupon_id,
            limitations=limitations,
        )

    @abstractmethod
    def reward_points(self, purchasable: Any) -> int:
        """Points granted when the purchasable becomes active."""

    @abstractmethod
    def _apply_activation(self, purchasable: Any, now: datetime) -> None:
        """Move the row to its active state and fill derived fields."""

    def _apply_reversal(self, purchasable: Any, now: datetime) -> list[str]:
        """Undo what is safely reversible; return the limitations that remain."""

        purchasable.cancelled_at = now
        return []


__all__ = ["ActivationResult", "PurchasableHandler", "ReversalResult"]
