"""Periodic gateway reconciliation for payments whose webhook never arrived."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.payment import GATEWAY_METHODS, Payment, PaymentStatusEnum
from settlement_api.observability.tracing import settlement_span
from settlement_api.services.coupons import CouponLedger
from settlement_api.services.exceptions import (
    ConflictingStateError,
    LimitExceededError,
    ReconciliationExhaustedError,
    TransientGatewayError,
)
from settlement_api.services.gateways import GatewayRegistry
from settlement_api.services.purchasables import PurchasableActivator
from .outcomes import Actor, PaymentOutcome
from .resolution import resolve_gateway_status
from .state_machine import PaymentStateMachine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ReconciliationSummary:
    checked: int = 0
    resolved: int = 0
    pending: int = 0
    failed: int = 0
    exhausted: int = 0
    coupon_rollbacks: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class ReconciliationService:
    """Query the gateway for stale pending payments and feed the answer to the state machine.

    Every payment is committed on its own, so a sweep killed halfway resumes
    where it stopped on the next run.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        gateways: GatewayRegistry,
        state_machine: PaymentStateMachine,
        min_age_seconds: int = 300,
        max_age_hours: int = 72,
        batch_size: int = 50,
        max_attempts: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._gateways = gateways
        self._state_machine = state_machine
        self._min_age = timedelta(seconds=min_age_seconds)
        self._max_age = timedelta(hours=max_age_hours)
        self._batch_size = batch_size
        self._max_attempts = max(max_attempts, 1)
        self._clock = clock or _utcnow
        self._coupons = CouponLedger(db)
        self._activator = PurchasableActivator(db)

    async def sweep(self, *, run_id: str | None = None) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        actor = Actor.reconciliation(run_id)
        with settlement_span("payment.reconciliation", run_id=run_id) as span:
            for payment_id in await self._candidate_ids():
                summary.checked += 1
                try:
                    await self._reconcile(payment_id, actor, summary)
                except Exception as exc:
                    await self._db.rollback()
                    logger.exception(
                        "Payment reconciliation aborted for payment",
                        payment_id=str(payment_id),
                        run_id=run_id,
                        error=str(exc),
                    )
                    summary.failed += 1
            summary.coupon_rollbacks = await self.retry_coupon_rollbacks()
            for key, value in summary.as_dict().items():
                span.set_attribute(f"settlement.{key}", value)

        logger.info("Payment reconciliation sweep finished", run_id=run_id, **summary.as_dict())
        return summary

    async def retry_coupon_rollbacks(self) -> int:
        """Re-run coupon rollbacks that failed while a payment was being reversed."""

        result = await self._db.execute(
            select(Payment.id)
            .where(Payment.needs_coupon_rollback.is_(True))
            .order_by(Payment.updated_at)
            .limit(self._batch_size)
        )
        payment_ids: List[UUID] = list(result.scalars().all())
        await self._db.commit()

        repaired = 0
        for payment_id in payment_ids:
            try:
                if await self._retry_coupon_rollback(payment_id):
                    repaired += 1
            except SQLAlchemyError as exc:
                await self._db.rollback()
                logger.error(
                    "Coupon rollback retry failed",
                    payment_id=str(payment_id),
                    error=str(exc),
                )
        return repaired

    async def _candidate_ids(self) -> List[UUID]:
        now = self._clock()
        stmt = (
            select(Payment.id)
            .where(
                Payment.status == PaymentStatusEnum.PENDING,
                Payment.method.in_(GATEWAY_METHODS),
                Payment.transaction_id.is_not(None),
                Payment.created_at <= now - self._min_age,
                Payment.created_at >= now - self._max_age,
            )
            .order_by(Payment.created_at)
            .limit(self._batch_size)
        )
        result = await self._db.execute(stmt)
        payment_ids = list(result.scalars().all())
        await self._db.commit()
        return payment_ids

    async def _reconcile(self, payment_id: UUID, actor: Actor, summary: ReconciliationSummary) -> None:
        payment = await self._db.get(Payment, payment_id, populate_existing=True)
        if payment is None or payment.status != PaymentStatusEnum.PENDING:
            await self._db.commit()
            return

        client = self._gateways.client_for(payment.method)
        if client is None:
            await self._db.commit()
            return

        transaction_id = payment.transaction_id
        amount = payment.amount
        currency = payment.currency.value
        await self._db.commit()

        try:
            gateway_status = await client.get_payment(transaction_id)
            resolution = await resolve_gateway_status(
                client,
                gateway_status.status,
                transaction_id=transaction_id,
                amount=amount,
                currency=currency,
            )
        except TransientGatewayError as exc:
            summary.failed += 1
            if await self._record_failure(payment_id, actor, str(exc)):
                summary.exhausted += 1
            return

        if resolution.outcome is None:
            await self._record_still_pending(payment_id, gateway_status.status.value)
            summary.pending += 1
            return

        try:
            await self._state_machine.apply_outcome(payment_id, resolution.outcome, actor, note="reconciliation")
        except LimitExceededError:
            summary.resolved += 1
            return
        except ConflictingStateError as exc:
            logger.warning(
                "Reconciliation outcome conflicts with payment state",
                payment_id=str(payment_id),
                current=exc.current,
                requested=exc.requested,
            )
            summary.failed += 1
            return
        except Exception as exc:
            logger.exception("Reconciliation failed to apply outcome", payment_id=str(payment_id), error=str(exc))
            summary.failed += 1
            if await self._record_failure(payment_id, actor, str(exc)):
                summary.exhausted += 1
            return

        if resolution.captured:
            await self._update_meta(payment_id, lambda meta: meta.with_gateway_state(captured=True))
        summary.resolved += 1

    async def _record_failure(self, payment_id: UUID, actor: Actor, error: str) -> bool:
        """Count a failed attempt; returns ``True`` when the payment was exhausted."""

        now = self._clock()
        payment = await self._lock(payment_id)
        if payment is None or payment.status != PaymentStatusEnum.PENDING:
            await self._db.commit()
            return False

        attempts = payment.meta.reconciliation.attempts + 1
        exhausted = attempts >= self._max_attempts
        payment.meta = payment.meta.with_reconciliation(
            attempts=attempts,
            last_error=error,
            last_attempt_at=now,
            exhausted=exhausted,
        )
        await self._db.commit()
        logger.warning(
            "Reconciliation attempt failed",
            payment_id=str(payment_id),
            attempts=attempts,
            max_attempts=self._max_attempts,
            error=error,
        )
        if not exhausted:
            return False

        exhausted_error = ReconciliationExhaustedError(payment_id, attempts, error)
        logger.error(
            str(exhausted_error),
            payment_id=str(payment_id),
            attempts=attempts,
            last_error=error,
            reconciliation_exhausted=True,
        )
        try:
            await self._state_machine.apply_outcome(
                payment_id,
                PaymentOutcome.EXPIRED,
                actor,
                note="reconciliation_exhausted",
            )
        except ConflictingStateError as exc:
            logger.warning(
                "Exhausted payment could not be expired",
                payment_id=str(payment_id),
                current=exc.current,
            )
        except Exception as exc:
            logger.exception(
                "Expiry of exhausted payment failed; marking it failed",
                payment_id=str(payment_id),
                error=str(exc),
            )
            await self._state_machine.mark_failed(payment_id, actor, reason="reconciliation_exhausted")
        return True

    async def _record_still_pending(self, payment_id: UUID, gateway_status: str) -> None:
        now = self._clock()
        await self._update_meta(
            payment_id,
            lambda meta: meta.with_gateway_state(status=gateway_status, updated_at=now).with_reconciliation(
                attempts=0,
                last_error=None,
                last_attempt_at=now,
            ),
        )

    async def _update_meta(self, payment_id: UUID, change) -> None:
        payment = await self._lock(payment_id)
        if payment is not None:
            payment.meta = change(payment.meta)
        await self._db.commit()

    async def _retry_coupon_rollback(self, payment_id: UUID) -> bool:
        payment = await self._lock(payment_id)
        if payment is None or not payment.needs_coupon_rollback:
            await self._db.commit()
            return False

        purchasable = await self._activator.load(payment.paymentable_type, payment.paymentable_id)
        coupon_id = purchasable.coupon_id
        if coupon_id is not None:
            async with self._db.begin_nested():
                await self._coupons.rollback(purchasable.user_id, coupon_id)
        payment.needs_coupon_rollback = False
        payment.meta = payment.meta.with_coupon(rollback_error=None)
        await self._db.commit()
        logger.info(
            "Pending coupon rollback applied",
            payment_id=str(payment_id),
            coupon_id=str(coupon_id) if coupon_id else None,
        )
        return True

    async def _lock(self, payment_id: UUID) -> Payment | None:
        result = await self._db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()


__all__ = ["ReconciliationService", "ReconciliationSummary"]
