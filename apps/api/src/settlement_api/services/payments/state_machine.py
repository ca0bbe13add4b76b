"""Payment state machine.

Owns ``payments.status`` and moves the funded purchasable, the loyalty ledger
and the coupon ledger with it. Every transition runs in one transaction on
the locked payment row; best-effort work is handed to the side-effect
dispatcher only after that transaction commits.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from settlement_api.models.payment import (
    GATEWAY_METHODS,
    OPEN_STATUSES,
    PROOF_METHODS,
    Payment,
    PaymentStateEvent,
    PaymentStatusEnum,
)
from settlement_api.observability.payments import get_payment_store
from settlement_api.observability.tracing import settlement_span
from settlement_api.schemas.payment_metadata import DecisionRecord, RefundRecord
from settlement_api.services.coupons import CouponLedger
from settlement_api.services.exceptions import (
    ConflictingStateError,
    LimitExceededError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from settlement_api.services.gateways import GatewayRegistry
from settlement_api.services.loyalty import LoyaltyLedger
from settlement_api.services.purchasables import PurchasableActivator, ReversalResult
from settlement_api.services.side_effects import SideEffect, SideEffectDispatcher
from .outcomes import Actor, PaymentOutcome

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStateMachine:
    """Apply outcomes and lifecycle transitions to a single payment."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        dispatcher: SideEffectDispatcher | None = None,
        gateways: GatewayRegistry | None = None,
        activator: PurchasableActivator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._dispatcher = dispatcher
        self._gateways = gateways
        self._activator = activator or PurchasableActivator(db)
        self._loyalty = LoyaltyLedger(db)
        self._coupons = CouponLedger(db)
        self._clock = clock or _utcnow
        self._observability = get_payment_store()

    async def apply_outcome(
        self,
        payment_id: UUID,
        outcome: PaymentOutcome | str,
        actor: Actor,
        *,
        note: str | None = None,
    ) -> Payment:
        """Drive a payment to the terminal state implied by ``outcome``.

        Re-applying an outcome the payment already reflects returns it
        untouched. A lost optimistic-version race is retried once from a
        fresh read, which then lands in that short-circuit.
        """

        outcome = PaymentOutcome(outcome)
        with settlement_span(
            "payment.apply_outcome",
            payment_id=payment_id,
            outcome=outcome.value,
            actor=actor.kind.value,
        ):
            try:
                return await self._apply_outcome_once(payment_id, outcome, actor, note)
            except StaleDataError:
                await self._db.rollback()
                logger.warning(
                    "Concurrent payment update detected; retrying outcome",
                    payment_id=str(payment_id),
                    outcome=outcome.value,
                )
            try:
                return await self._apply_outcome_once(payment_id, outcome, actor, note)
            except StaleDataError as exc:
                await self._db.rollback()
                raise ConflictingStateError(
                    f"Payment {payment_id} is being updated concurrently",
                    requested=outcome.value,
                ) from exc

    async def attach_proof(self, payment_id: UUID, user_id: UUID, proof_url: str) -> Payment:
        """Attach a transfer receipt and queue the payment for admin review."""

        proof_url = (proof_url or "").strip()
        if not proof_url:
            raise PaymentValidationError("A proof URL is required")

        try:
            payment = await self._load_payment(payment_id)
            if payment.user_id != user_id:
                raise PaymentNotFoundError(f"Payment {payment_id} not found")
            if payment.method not in PROOF_METHODS:
                raise PaymentValidationError(f"Payment method {payment.method.value} does not accept proofs")
            if payment.status not in OPEN_STATUSES:
                raise ConflictingStateError(
                    f"Cannot attach proof to payment in {payment.status.value}",
                    current=payment.status.value,
                    requested="attach_proof",
                )

            previous = payment.status
            payment.proof_url = proof_url
            payment.status = PaymentStatusEnum.PENDING_VERIFICATION
            self._record_event(
                payment,
                previous,
                outcome=None,
                actor=Actor.member(str(user_id)),
                notes="proof attached" if previous == PaymentStatusEnum.PENDING else "proof replaced",
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.info("Payment proof attached", payment_id=str(payment_id), user_id=str(user_id))
        await self._dispatch([SideEffect.notification("payment.proof_submitted", payment.id, self._payload(payment))])
        return payment

    async def cancel(self, payment_id: UUID, actor: Actor, *, reason: str | None = None) -> Payment:
        """Cancel a payment that never succeeded and release its purchasable."""

        try:
            payment = await self._load_payment(payment_id)
            if payment.status == PaymentStatusEnum.CANCELLED:
                await self._db.commit()
                return payment
            if payment.status in {PaymentStatusEnum.SUCCESS, PaymentStatusEnum.REFUNDED}:
                raise ConflictingStateError(
                    f"Cannot cancel payment in {payment.status.value}",
                    current=payment.status.value,
                    requested="cancel",
                )

            previous = payment.status
            payment.status = PaymentStatusEnum.CANCELLED
            meta = payment.meta
            payment.meta = meta.model_copy(update={"failure_reason": reason or "cancelled"})
            self._record_event(payment, previous, outcome=None, actor=actor, notes=reason or "cancelled")

            reversal = await self._activator.reverse(
                payment.paymentable_type, payment.paymentable_id, now=self._clock()
            )
            if reversal.was_active:
                await self._unwind_ledgers(payment, reversal)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.info("Payment cancelled", payment_id=str(payment_id), actor=actor.kind.value)
        await self._dispatch([SideEffect.notification("payment.cancelled", payment.id, self._payload(payment))])
        return payment

    async def refund(self, payment_id: UUID, actor: Actor, *, reason: str | None = None) -> Payment:
        """Refund a successful payment at the gateway, then unwind everything it granted."""

        payment = await self._get_payment(payment_id)
        if payment.status == PaymentStatusEnum.REFUNDED:
            return payment
        if payment.status != PaymentStatusEnum.SUCCESS:
            raise ConflictingStateError(
                f"Cannot refund payment in {payment.status.value}",
                current=payment.status.value,
                requested="refund",
            )

        refund_reference: str | None = None
        client = self._gateways.client_for(payment.method) if self._gateways else None
        if client is not None and payment.transaction_id:
            transaction_id = payment.transaction_id
            amount = payment.amount
            currency = payment.currency.value
            # No transaction stays open across the remote call.
            await self._db.commit()
            result = await client.refund(transaction_id, amount, currency, reason=reason)
            refund_reference = result.refund_id

        try:
            payment = await self._load_payment(payment_id)
            if payment.status == PaymentStatusEnum.REFUNDED:
                await self._db.commit()
                return payment
            if payment.status != PaymentStatusEnum.SUCCESS:
                raise ConflictingStateError(
                    f"Cannot refund payment in {payment.status.value}",
                    current=payment.status.value,
                    requested="refund",
                )

            previous = payment.status
            payment.status = PaymentStatusEnum.REFUNDED
            meta = payment.meta
            payment.meta = meta.model_copy(
                update={
                    "refund": RefundRecord(
                        reason=reason,
                        reference=refund_reference,
                        refunded_by=actor.id,
                        refunded_at=self._clock(),
                    )
                }
            )
            self._record_event(payment, previous, outcome=None, actor=actor, notes=reason or "refunded")

            reversal = await self._activator.reverse(
                payment.paymentable_type, payment.paymentable_id, now=self._clock()
            )
            if reversal.was_active:
                await self._unwind_ledgers(payment, reversal)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.info(
            "Payment refunded",
            payment_id=str(payment_id),
            actor=actor.kind.value,
            refund_reference=refund_reference,
        )
        await self._dispatch([SideEffect.notification("payment.refunded", payment.id, self._payload(payment))])
        return payment

    async def mark_failed(self, payment_id: UUID, actor: Actor, *, reason: str) -> Payment:
        """Move an open payment to FAILED without touching its purchasable or ledgers.

        Used when the full EXPIRED outcome cannot be applied, so the payment
        stops being picked up again. The purchasable is left for an operator.
        """

        try:
            payment = await self._load_payment(payment_id)
            if payment.status not in OPEN_STATUSES:
                await self._db.commit()
                return payment

            previous = payment.status
            payment.status = PaymentStatusEnum.FAILED
            payment.meta = payment.meta.model_copy(update={"failure_reason": reason})
            self._record_event(payment, previous, PaymentOutcome.EXPIRED, actor, notes=reason)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.error(
            "Payment marked failed without reversing its purchasable",
            payment_id=str(payment_id),
            paymentable_type=payment.paymentable_type.value,
            purchasable_id=str(payment.paymentable_id),
            reason=reason,
        )
        self._observability.record_outcome(PaymentOutcome.EXPIRED.value, "forced")
        return payment

    async def _apply_outcome_once(
        self,
        payment_id: UUID,
        outcome: PaymentOutcome,
        actor: Actor,
        note: str | None,
    ) -> Payment:
        effects: List[SideEffect] = []
        try:
            payment = await self._load_payment(payment_id)
            if payment.status == outcome.target_status:
                await self._db.commit()
                logger.info(
                    "Ignored duplicate payment outcome",
                    payment_id=str(payment_id),
                    outcome=outcome.value,
                    status=payment.status.value,
                    actor=actor.kind.value,
                )
                self._observability.record_outcome(outcome.value, "duplicate")
                return payment

            self._guard(payment, outcome, actor)
            if outcome is PaymentOutcome.APPROVED:
                effects = await self._approve(payment, actor, note)
            else:
                effects = await self._fail(payment, outcome, actor, note)
            await self._db.commit()
        except LimitExceededError as exc:
            await self._db.rollback()
            await self._record_limit_exceeded(payment_id, actor, exc)
            self._observability.record_outcome(outcome.value, "limit_exceeded")
            raise
        except StaleDataError:
            raise
        except (ConflictingStateError, PaymentValidationError):
            await self._db.rollback()
            self._observability.record_outcome(outcome.value, "rejected")
            raise
        except Exception:
            await self._db.rollback()
            raise

        self._observability.record_outcome(outcome.value, "applied")
        logger.info(
            "Payment outcome applied",
            payment_id=str(payment_id),
            outcome=outcome.value,
            status=payment.status.value,
            actor=actor.kind.value,
            actor_id=actor.id,
        )
        await self._dispatch(effects)
        return payment

    def _guard(self, payment: Payment, outcome: PaymentOutcome, actor: Actor) -> None:
        status = payment.status
        if outcome is PaymentOutcome.APPROVED:
            if status not in OPEN_STATUSES:
                raise ConflictingStateError(
                    f"Cannot approve payment in {status.value}",
                    current=status.value,
                    requested=outcome.value,
                )
            self._require_evidence(payment)
            return

        if status in OPEN_STATUSES:
            return
        if status == PaymentStatusEnum.SUCCESS and actor.is_admin:
            return
        raise ConflictingStateError(
            f"Cannot apply {outcome.value} to payment in {status.value}",
            current=status.value,
            requested=outcome.value,
        )

    @staticmethod
    def _require_evidence(payment: Payment) -> None:
        if payment.method in GATEWAY_METHODS and not payment.transaction_id:
            raise PaymentValidationError(f"Payment {payment.id} has no gateway transaction id")
        if payment.method in PROOF_METHODS and not payment.proof_url:
            raise PaymentValidationError(f"Payment {payment.id} has no payment proof attached")

    async def _approve(self, payment: Payment, actor: Actor, note: str | None) -> List[SideEffect]:
        now = self._clock()
        previous = payment.status
        payment.status = PaymentStatusEnum.SUCCESS
        payment.processed_at = now
        self._stamp_decision(payment, actor, "approved", note, now)
        self._record_event(payment, previous, PaymentOutcome.APPROVED, actor, note)

        activation = await self._activator.activate(payment.paymentable_type, payment.paymentable_id, now=now)
        await self._loyalty.award(
            activation.user_id,
            activation.reward_points,
            activation.loyalty_source,
            activation.purchasable_id,
            metadata={"payment_id": str(payment.id)},
        )
        if activation.coupon_id is not None:
            await self._coupons.redeem(activation.user_id, activation.coupon_id)
        await self._db.flush()

        effects = [SideEffect.notification("payment.approved", payment.id, self._payload(payment))]
        if activation.requires_shipment:
            effects.append(SideEffect.shipment(payment.id, activation.purchasable_id))
        return effects

    async def _fail(
        self,
        payment: Payment,
        outcome: PaymentOutcome,
        actor: Actor,
        note: str | None,
    ) -> List[SideEffect]:
        now = self._clock()
        previous = payment.status
        payment.status = PaymentStatusEnum.FAILED
        meta = payment.meta
        payment.meta = meta.model_copy(update={"failure_reason": note or outcome.value})
        self._stamp_decision(payment, actor, "rejected", note, now)
        self._record_event(payment, previous, outcome, actor, note)

        reversal = await self._activator.reverse(payment.paymentable_type, payment.paymentable_id, now=now)
        if reversal.was_active:
            logger.info(
                "Overturning approved payment",
                payment_id=str(payment.id),
                purchasable_id=str(reversal.purchasable_id),
                actor=actor.kind.value,
                actor_id=actor.id,
            )
            await self._unwind_ledgers(payment, reversal)
        await self._db.flush()

        event_kind = "payment.expired" if outcome is PaymentOutcome.EXPIRED else "payment.rejected"
        return [SideEffect.notification(event_kind, payment.id, self._payload(payment))]

    async def _unwind_ledgers(self, payment: Payment, reversal: ReversalResult) -> None:
        earned = await self._loyalty.earned_for(reversal.loyalty_source, reversal.purchasable_id)
        if earned is not None:
            await self._loyalty.reverse(
                reversal.user_id,
                int(earned.points),
                reversal.loyalty_source,
                reversal.purchasable_id,
                metadata={"payment_id": str(payment.id)},
            )
        if reversal.coupon_id is not None:
            await self._rollback_coupon(payment, reversal.user_id, reversal.coupon_id)

    async def _rollback_coupon(self, payment: Payment, user_id: UUID, coupon_id: UUID) -> None:
        try:
            async with self._db.begin_nested():
                await self._coupons.rollback(user_id, coupon_id)
        except SQLAlchemyError as exc:
            # Left for the reconciliation sweep; the payment outcome still commits.
            logger.exception(
                "Coupon rollback failed; flagged for retry",
                payment_id=str(payment.id),
                coupon_id=str(coupon_id),
                user_id=str(user_id),
                error=str(exc),
            )
            payment.needs_coupon_rollback = True
            payment.meta = payment.meta.with_coupon(coupon_id=str(coupon_id), rollback_error=str(exc))

    async def _record_limit_exceeded(self, payment_id: UUID, actor: Actor, error: LimitExceededError) -> None:
        """Money moved but the coupon is sold out: keep the payment, cancel the purchase."""

        try:
            payment = await self._load_payment(payment_id)
            if payment.status != PaymentStatusEnum.SUCCESS:
                now = self._clock()
                previous = payment.status
                payment.status = PaymentStatusEnum.SUCCESS
                payment.processed_at = now
                payment.meta = payment.meta.with_coupon(
                    coupon_id=str(error.coupon_id) if error.coupon_id else None,
                    limit_exceeded=True,
                    limit_reason=str(error),
                    refund_required=True,
                )
                self._record_event(
                    payment,
                    previous,
                    PaymentOutcome.APPROVED,
                    actor,
                    notes=f"coupon {error.scope} limit exceeded; purchasable cancelled",
                )
                await self._activator.reverse(payment.paymentable_type, payment.paymentable_id, now=now)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.warning(
            "Coupon limit exceeded at approval; purchase cancelled and refund required",
            payment_id=str(payment_id),
            coupon_id=str(error.coupon_id) if error.coupon_id else None,
            scope=error.scope,
        )
        await self._dispatch(
            [SideEffect.notification("payment.refund_required", payment.id, self._payload(payment))]
        )

    async def _get_payment(self, payment_id: UUID) -> Payment:
        payment = await self._db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    async def _load_payment(self, payment_id: UUID) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        payment = result.scalars().first()
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    def _stamp_decision(
        self,
        payment: Payment,
        actor: Actor,
        decision: str,
        note: str | None,
        now: datetime,
    ) -> None:
        if not actor.is_admin:
            return
        meta = payment.meta
        payment.meta = meta.model_copy(
            update={"decision": DecisionRecord(decision=decision, decided_by=actor.id, note=note, decided_at=now)}
        )

    def _record_event(
        self,
        payment: Payment,
        previous: PaymentStatusEnum | None,
        outcome: PaymentOutcome | None,
        actor: Actor,
        notes: str | None = None,
    ) -> None:
        self._db.add(
            PaymentStateEvent(
                payment_id=payment.id,
                from_status=previous.value if previous else None,
                to_status=payment.status.value,
                outcome=outcome.value if outcome else None,
                actor_type=actor.kind,
                actor_id=actor.id,
                notes=notes,
                metadata_json={},
            )
        )

    @staticmethod
    def _payload(payment: Payment) -> Dict[str, Any]:
        return {
            "payment_id": str(payment.id),
            "user_id": str(payment.user_id),
            "paymentable_type": payment.paymentable_type.value,
            "paymentable_id": str(payment.paymentable_id),
            "status": payment.status.value,
            "amount": str(payment.amount),
            "currency": payment.currency.value,
        }

    async def _dispatch(self, effects: List[SideEffect]) -> None:
        if not effects or self._dispatcher is None:
            return
        await self._dispatcher.submit(effects)


__all__ = ["PaymentStateMachine"]
