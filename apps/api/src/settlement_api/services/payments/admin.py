"""Manual verification queue for proof-based payments."""

from __future__ import annotations

from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.payment import Payment, PaymentStatusEnum
from settlement_api.services.coupons import CouponLedger
from settlement_api.services.purchasables import PurchasableActivator
from .outcomes import Actor, PaymentOutcome
from .state_machine import PaymentStateMachine


class AdminDecisionService:
    def __init__(self, db: AsyncSession, *, state_machine: PaymentStateMachine) -> None:
        self._db = db
        self._state_machine = state_machine
        self._activator = PurchasableActivator(db)
        self._coupons = CouponLedger(db)

    async def list_pending(self, *, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """Payments awaiting a decision, oldest first, with advisory coupon availability."""

        total_result = await self._db.execute(
            select(func.count())
            .select_from(Payment)
            .where(Payment.status == PaymentStatusEnum.PENDING_VERIFICATION)
        )
        result = await self._db.execute(
            select(Payment)
            .where(Payment.status == PaymentStatusEnum.PENDING_VERIFICATION)
            .order_by(Payment.created_at, Payment.id)
            .limit(limit)
            .offset(offset)
        )
        items: List[Dict[str, Any]] = []
        for payment in result.scalars().all():
            items.append(await self._describe(payment))
        return {"total": int(total_result.scalar_one()), "items": items}

    async def approve(self, payment_id: UUID, admin_id: str, *, note: str | None = None) -> Payment:
        logger.info("Admin approving payment", payment_id=str(payment_id), admin_id=admin_id)
        return await self._state_machine.apply_outcome(
            payment_id,
            PaymentOutcome.APPROVED,
            Actor.admin(admin_id),
            note=note,
        )

    async def reject(self, payment_id: UUID, admin_id: str, *, reason: str | None = None) -> Payment:
        """Reject a pending payment, or overturn an approval that turned out to be wrong."""

        logger.info("Admin rejecting payment", payment_id=str(payment_id), admin_id=admin_id, reason=reason)
        return await self._state_machine.apply_outcome(
            payment_id,
            PaymentOutcome.REJECTED,
            Actor.admin(admin_id),
            note=reason,
        )

    async def cancel(self, payment_id: UUID, admin_id: str, *, reason: str | None = None) -> Payment:
        return await self._state_machine.cancel(payment_id, Actor.admin(admin_id), reason=reason)

    async def refund(self, payment_id: UUID, admin_id: str, *, reason: str | None = None) -> Payment:
        return await self._state_machine.refund(payment_id, Actor.admin(admin_id), reason=reason)

    async def _describe(self, payment: Payment) -> Dict[str, Any]:
        purchasable = await self._activator.load(payment.paymentable_type, payment.paymentable_id)
        coupon = None
        if purchasable.coupon_id is not None:
            availability = await self._coupons.check_availability(
                payment.user_id,
                purchasable.coupon_id,
                exclude=(payment.paymentable_type, payment.paymentable_id),
            )
            coupon = availability.as_dict()
        return {
            "payment": serialize_payment(payment),
            "purchasable_status": purchasable.status.value,
            "coupon": coupon,
        }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "user_id": str(payment.user_id),
        "amount": str(payment.amount),
        "currency": payment.currency.value,
        "method": payment.method.value,
        "status": payment.status.value,
        "paymentable_type": payment.paymentable_type.value,
        "paymentable_id": str(payment.paymentable_id),
        "transaction_id": payment.transaction_id,
        "payment_reference": payment.payment_reference,
        "proof_url": payment.proof_url,
        "processed_at": payment.processed_at.isoformat() if payment.processed_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "metadata": payment.metadata_json or {},
    }


__all__ = ["AdminDecisionService", "serialize_payment"]
