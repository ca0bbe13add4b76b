"""Coupon redemption ledger.

Both counters are contended by unrelated payments that share a coupon, so
every change is a single conditional ``UPDATE`` (or insert-on-conflict)
evaluated by the database rather than a read followed by a write.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.coupon import Coupon, UserCouponRedemption
from settlement_api.models.order import Order, OrderStatusEnum
from settlement_api.models.payment import PaymentableTypeEnum
from settlement_api.models.programme import ProgrammePurchase, ProgrammePurchaseStatusEnum
from settlement_api.models.subscription import Subscription, SubscriptionStatusEnum
from settlement_api.services.exceptions import LimitExceededError

# Purchases holding a coupon while their payment is still open.
_IN_FLIGHT_SOURCES: tuple[tuple[PaymentableTypeEnum, Any, Any], ...] = (
    (PaymentableTypeEnum.ORDER, Order, OrderStatusEnum.PENDING),
    (PaymentableTypeEnum.SUBSCRIPTION, Subscription, SubscriptionStatusEnum.PENDING),
    (PaymentableTypeEnum.PROGRAMME, ProgrammePurchase, ProgrammePurchaseStatusEnum.PENDING),
)


@dataclass(slots=True)
class CouponRedemption:
    coupon_id: UUID
    user_id: UUID
    usage_count: int
    total_redemptions: int


@dataclass(slots=True)
class CouponAvailability:
    coupon_id: UUID
    available: bool
    reason: str | None
    total_redemptions: int
    user_redemptions: int
    in_flight_global: int
    in_flight_user: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "coupon_id": str(self.coupon_id),
            "available": self.available,
            "reason": self.reason,
            "total_redemptions": self.total_redemptions,
            "user_redemptions": self.user_redemptions,
            "in_flight_global": self.in_flight_global,
            "in_flight_user": self.in_flight_user,
        }


class CouponLedger:
    """Redeem and roll back coupon usage inside the caller's transaction."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def redeem(self, user_id: UUID, coupon_id: UUID) -> CouponRedemption | None:
        """Consume one use of the coupon for the user.

        Raises ``LimitExceededError`` when either cap is already reached; the
        caller must abort its transaction so the per-user increment made
        before the global check is discarded too.

        Only completed redemptions count against the caps here. Counting
        in-flight pending payments is advisory and lives in
        ``check_availability``.
        """

        coupon = await self._db.get(Coupon, coupon_id)
        if coupon is None:
            logger.warning("Coupon missing at redemption time", coupon_id=str(coupon_id), user_id=str(user_id))
            return None

        per_user_cap = int(coupon.max_redemptions_per_user or 0)
        if not await self._insert_first_use(user_id, coupon_id):
            stmt = update(UserCouponRedemption).where(
                UserCouponRedemption.user_id == user_id,
                UserCouponRedemption.coupon_id == coupon_id,
            )
            if per_user_cap > 0:
                stmt = stmt.where(UserCouponRedemption.usage_count < per_user_cap)
            result = await self._db.execute(
                stmt.values(usage_count=UserCouponRedemption.usage_count + 1).execution_options(
                    synchronize_session=False
                )
            )
            if result.rowcount == 0:
                logger.warning(
                    "Coupon per-user limit reached",
                    coupon_id=str(coupon_id),
                    user_id=str(user_id),
                    max_redemptions_per_user=per_user_cap,
                )
                raise LimitExceededError(
                    f"Coupon {coupon.code} already used {per_user_cap} time(s) by this user",
                    coupon_id=coupon_id,
                    scope="user",
                )

        global_cap = int(coupon.max_redemptions or 0)
        stmt = update(Coupon).where(Coupon.id == coupon_id)
        if global_cap > 0:
            stmt = stmt.where(Coupon.total_redemptions < global_cap)
        result = await self._db.execute(
            stmt.values(total_redemptions=Coupon.total_redemptions + 1).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("Coupon global limit reached", coupon_id=str(coupon_id), max_redemptions=global_cap)
            raise LimitExceededError(
                f"Coupon {coupon.code} reached its redemption limit of {global_cap}",
                coupon_id=coupon_id,
                scope="global",
            )

        redemption = await self._counts(user_id, coupon_id)
        logger.info(
            "Coupon redeemed",
            coupon_id=str(coupon_id),
            user_id=str(user_id),
            usage_count=redemption.usage_count,
            total_redemptions=redemption.total_redemptions,
        )
        return redemption

    async def rollback(self, user_id: UUID, coupon_id: UUID) -> bool:
        """Give one use back. Returns ``False`` when there was nothing to undo."""

        result = await self._db.execute(
            update(UserCouponRedemption)
            .where(
                UserCouponRedemption.user_id == user_id,
                UserCouponRedemption.coupon_id == coupon_id,
                UserCouponRedemption.usage_count > 0,
            )
            .values(usage_count=UserCouponRedemption.usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("No coupon redemption to roll back", coupon_id=str(coupon_id), user_id=str(user_id))
            return False

        await self._db.execute(
            delete(UserCouponRedemption)
            .where(
                UserCouponRedemption.user_id == user_id,
                UserCouponRedemption.coupon_id == coupon_id,
                UserCouponRedemption.usage_count <= 0,
            )
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.total_redemptions > 0)
            .values(total_redemptions=Coupon.total_redemptions - 1)
            .execution_options(synchronize_session=False)
        )
        logger.info("Coupon redemption rolled back", coupon_id=str(coupon_id), user_id=str(user_id))
        return True

    async def in_flight_usage(
        self,
        coupon_id: UUID,
        *,
        user_id: UUID | None = None,
        exclude: tuple[PaymentableTypeEnum, UUID] | None = None,
    ) -> int:
        """Count purchases that reference the coupon and are still awaiting payment."""

        total = 0
        for kind, model, pending_status in _IN_FLIGHT_SOURCES:
            stmt = select(func.count()).select_from(model).where(
                model.coupon_id == coupon_id,
                model.status == pending_status,
            )
            if user_id is not None:
                stmt = stmt.where(model.user_id == user_id)
            if exclude is not None and exclude[0] == kind:
                stmt = stmt.where(model.id != exclude[1])
            result = await self._db.execute(stmt)
            total += int(result.scalar_one())
        return total

    async def check_availability(
        self,
        user_id: UUID,
        coupon_id: UUID,
        *,
        exclude: tuple[PaymentableTypeEnum, UUID] | None = None,
    ) -> CouponAvailability:
        """Advisory check: completed redemptions plus in-flight purchases against both caps."""

        coupon = await self._db.get(Coupon, coupon_id)
        if coupon is None:
            return CouponAvailability(coupon_id, False, "not_found", 0, 0, 0, 0)

        counts = await self._counts(user_id, coupon_id)
        in_flight_global = await self.in_flight_usage(coupon_id, exclude=exclude)
        in_flight_user = await self.in_flight_usage(coupon_id, user_id=user_id, exclude=exclude)

        reason: str | None = None
        if not coupon.is_active:
            reason = "inactive"
        elif coupon.max_redemptions and counts.total_redemptions + in_flight_global >= coupon.max_redemptions:
            reason = "global_limit"
        elif (
            coupon.max_redemptions_per_user
            and counts.usage_count + in_flight_user >= coupon.max_redemptions_per_user
        ):
            reason = "user_limit"

        return CouponAvailability(
            coupon_id=coupon_id,
            available=reason is None,
            reason=reason,
            total_redemptions=counts.total_redemptions,
            user_redemptions=counts.usage_count,
            in_flight_global=in_flight_global,
            in_flight_user=in_flight_user,
        )

    async def _insert_first_use(self, user_id: UUID, coupon_id: UUID) -> bool:
        dialect_name = self._db.get_bind().dialect.name
        if dialect_name == "postgresql":
            insert_stmt = postgresql.insert(UserCouponRedemption)
        elif dialect_name == "sqlite":
            insert_stmt = sqlite.insert(UserCouponRedemption)
        else:  # pragma: no cover - only postgres and sqlite are deployed
            raise RuntimeError(f"Unsupported dialect for coupon redemption: {dialect_name}")

        stmt = insert_stmt.values(
            user_id=user_id,
            coupon_id=coupon_id,
            usage_count=1,
        ).on_conflict_do_nothing(index_elements=["user_id", "coupon_id"])
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def _counts(self, user_id: UUID, coupon_id: UUID) -> CouponRedemption:
        usage = await self._db.execute(
            select(UserCouponRedemption.usage_count).where(
                UserCouponRedemption.user_id == user_id,
                UserCouponRedemption.coupon_id == coupon_id,
            )
        )
        total = await self._db.execute(select(Coupon.total_redemptions).where(Coupon.id == coupon_id))
        return CouponRedemption(
            coupon_id=coupon_id,
            user_id=user_id,
            usage_count=int(usage.scalar_one_or_none() or 0),
            total_redemptions=int(total.scalar_one_or_none() or 0),
        )


__all__ = ["CouponAvailability", "CouponLedger", "CouponRedemption"]
