from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from settlement_api.models.order import Order, OrderStatusEnum
from settlement_api.models.payment import (
    Payment,
    PaymentMethodEnum,
    PaymentStateActorEnum,
    PaymentStatusEnum,
    PaymentableTypeEnum,
)
from settlement_api.models.reconciliation import PaymentReconciliationRun
from settlement_api.observability.payments import get_payment_store
from settlement_api.services.coupons import CouponLedger
from settlement_api.services.exceptions import TransientGatewayError
from settlement_api.services.gateways import GatewayStatus
from settlement_api.services.payments import Actor, PaymentOutcome, PaymentStateMachine, ReconciliationService
from settlement_api.workers.payment_reconciliation import PaymentReconciliationWorker


async def _sweep(session_factory, settlement_engine, run_id="run-test"):
    async with session_factory() as session:
        return await settlement_engine.reconciliation(session).sweep(run_id=run_id)


async def _runs(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(PaymentReconciliationRun))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_worker_run_resolves_stale_payments_inside_window(
    session_factory, seed, settlement_engine, card_gateway
):
    user_id = await seed.user()
    captured_order = await seed.order(user_id)
    waiting_order = await seed.order(user_id)
    captured = await seed.payment(user_id, PaymentableTypeEnum.ORDER, captured_order, transaction_id="pi_rec_1")
    waiting = await seed.payment(user_id, PaymentableTypeEnum.ORDER, waiting_order, transaction_id="pi_rec_2")
    too_young = await seed.payment(
        user_id, PaymentableTypeEnum.ORDER, await seed.order(user_id), transaction_id="pi_young", age=timedelta(0)
    )
    too_old = await seed.payment(
        user_id, PaymentableTypeEnum.ORDER, await seed.order(user_id), transaction_id="pi_old", age=timedelta(hours=100)
    )
    await seed.payment(
        user_id,
        PaymentableTypeEnum.ORDER,
        await seed.order(user_id),
        method=PaymentMethodEnum.MANUAL_PROOF,
        proof_url="https://files.example.com/proof.png",
    )
    card_gateway.statuses["pi_rec_1"] = GatewayStatus.CAPTURED

    worker = PaymentReconciliationWorker(session_factory, settlement_engine)
    counts = await worker.run_once(triggered_by="test")

    assert counts == {
        "checked": 2,
        "resolved": 1,
        "pending": 1,
        "failed": 0,
        "exhausted": 0,
        "coupon_rollbacks": 0,
    }
    assert sorted(card_gateway.lookups) == ["pi_rec_1", "pi_rec_2"]

    assert (await seed.get(Payment, captured)).status == PaymentStatusEnum.SUCCESS
    assert (await seed.get(Payment, waiting)).status == PaymentStatusEnum.PENDING
    assert (await seed.get(Payment, too_young)).status == PaymentStatusEnum.PENDING
    assert (await seed.get(Payment, too_old)).status == PaymentStatusEnum.PENDING
    assert (await seed.get(Order, captured_order)).status == OrderStatusEnum.PAID

    runs = await _runs(session_factory)
    assert len(runs) == 1
    run = runs[0]
    assert run.status == "completed"
    assert run.triggered_by == "test"
    assert (run.checked_count, run.resolved_count, run.failed_count) == (2, 1, 0)
    assert run.metadata_json["max_attempts"] == 3
    assert run.completed_at is not None

    events = await seed.events(captured)
    assert events[0].actor_type == PaymentStateActorEnum.RECONCILIATION
    assert events[0].actor_id == str(run.id)
    assert get_payment_store().snapshot().reconciliation.last_status == "completed"


@pytest.mark.asyncio
async def test_transient_failures_exhaust_into_expiry(session_factory, seed, settlement_engine, card_gateway, notifier):
    user_id = await seed.user()
    order_id = await seed.order(user_id)
    payment_id = await seed.payment(user_id, PaymentableTypeEnum.ORDER, order_id, transaction_id="pi_flaky")
    card_gateway.statuses["pi_flaky"] = TransientGatewayError("gateway timeout")

    first = await _sweep(session_factory, settlement_engine, "run-1")
    assert (first.failed, first.exhausted) == (1, 0)
    payment = await seed.get(Payment, payment_id)
    assert payment.status == PaymentStatusEnum.PENDING
    assert payment.meta.reconciliation.attempts == 1
    assert payment.meta.reconciliation.last_error == "gateway timeout"

    await _sweep(session_factory, settlement_engine, "run-2")
    third = await _sweep(session_factory, settlement_engine, "run-3")

    assert (third.failed, third.exhausted) == (1, 1)
    payment = await seed.get(Payment, payment_id)
    assert payment.status == PaymentStatusEnum.FAILED
    assert payment.meta.failure_reason == "reconciliation_exhausted"
    assert payment.meta.reconciliation.exhausted is True
    assert payment.meta.reconciliation.attempts == 3
    assert (await seed.get(Order, order_id)).status == OrderStatusEnum.CANCELLED
    assert notifier.kinds() == ["payment.expired"]

    fourth = await _sweep(session_factory, settlement_engine, "run-4")
    assert fourth.checked == 0


@pytest.mark.asyncio
async def test_payment_without_purchasable_is_marked_failed_and_does_not_block_sweep(
    session_factory, seed, settlement_engine, card_gateway
):
    user_id = await seed.user()
    orphan = await seed.payment(
        user_id, PaymentableTypeEnum.ORDER, uuid4(), transaction_id="pi_orphan", age=timedelta(minutes=30)
    )
    order_id = await seed.order(user_id)
    settled = await seed.payment(user_id, PaymentableTypeEnum.ORDER, order_id, transaction_id="pi_settled")
    card_gateway.statuses["pi_orphan"] = GatewayStatus.CAPTURED
    card_gateway.statuses["pi_settled"] = GatewayStatus.CAPTURED

    first = await _sweep(session_factory, settlement_engine, "run-1")

    assert (first.checked, first.resolved, first.failed, first.exhausted) == (2, 1, 1, 0)
    assert (await seed.get(Payment, settled)).status == PaymentStatusEnum.SUCCESS
    assert (await seed.get(Order, order_id)).status == OrderStatusEnum.PAID
    assert (await seed.get(Payment, orphan)).meta.reconciliation.attempts == 1

    await _sweep(session_factory, settlement_engine, "run-2")
    third = await _sweep(session_factory, settlement_engine, "run-3")

    assert (third.failed, third.exhausted) == (1, 1)
    payment = await seed.get(Payment, orphan)
    assert payment.status == PaymentStatusEnum.FAILED
    assert payment.meta.failure_reason == "reconciliation_exhausted"
    assert payment.meta.reconciliation.exhausted is True
    events = await seed.events(orphan)
    assert [event.to_status for event in events] == ["failed"]
    assert events[0].actor_type == PaymentStateActorEnum.RECONCILIATION

    fourth = await _sweep(session_factory, settlement_engine, "run-4")
    assert fourth.checked == 0


@pytest.mark.asyncio
async def test_unexpected_error_on_one_payment_does_not_end_sweep(
    session_factory, seed, settlement_engine, card_gateway, monkeypatch
):
    async def broken_mark_failed(self, payment_id, actor, *, reason):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(PaymentStateMachine, "mark_failed", broken_mark_failed)
    user_id = await seed.user()
    orphan = await seed.payment(
        user_id,
        PaymentableTypeEnum.ORDER,
        uuid4(),
        transaction_id="pi_stuck",
        age=timedelta(minutes=30),
        metadata={"reconciliation": {"attempts": 2}},
    )
    order_id = await seed.order(user_id)
    settled = await seed.payment(user_id, PaymentableTypeEnum.ORDER, order_id, transaction_id="pi_next")
    card_gateway.statuses["pi_stuck"] = GatewayStatus.CAPTURED
    card_gateway.statuses["pi_next"] = GatewayStatus.CAPTURED

    summary = await _sweep(session_factory, settlement_engine)

    assert summary.checked == 2
    assert summary.resolved == 1
    assert summary.exhausted == 0
    assert (await seed.get(Payment, settled)).status == PaymentStatusEnum.SUCCESS
    stuck = await seed.get(Payment, orphan)
    assert stuck.status == PaymentStatusEnum.PENDING
    assert stuck.meta.reconciliation.exhausted is True


@pytest.mark.asyncio
async def test_still_pending_answer_resets_attempts(session_factory, seed, settlement_engine):
    user_id = await seed.user()
    purchase_id = await seed.programme_purchase(user_id)
    payment_id = await seed.payment(
        user_id,
        PaymentableTypeEnum.PROGRAMME,
        purchase_id,
        transaction_id="pi_slow",
        metadata={"reconciliation": {"attempts": 2, "last_error": "boom"}},
    )

    summary = await _sweep(session_factory, settlement_engine)

    assert summary.pending == 1
    payment = await seed.get(Payment, payment_id)
    assert payment.status == PaymentStatusEnum.PENDING
    assert payment.meta.reconciliation.attempts == 0
    assert payment.meta.reconciliation.last_error is None
    assert payment.meta.gateway_state.status == "pending"


@pytest.mark.asyncio
async def test_authorized_payment_is_captured_during_sweep(
    session_factory, seed, settlement_engine, installment_gateway
):
    user_id = await seed.user()
    subscription_id = await seed.subscription(user_id)
    payment_id = await seed.payment(
        user_id,
        PaymentableTypeEnum.SUBSCRIPTION,
        subscription_id,
        method=PaymentMethodEnum.GATEWAY_INSTALLMENT,
        transaction_id="inst_auth",
        amount=Decimal("300.00"),
    )
    installment_gateway.statuses["inst_auth"] = GatewayStatus.AUTHORIZED

    summary = await _sweep(session_factory, settlement_engine)

    assert summary.resolved == 1
    assert installment_gateway.captures == [("inst_auth", Decimal("300.00"), "EGP")]
    payment = await seed.get(Payment, payment_id)
    assert payment.status == PaymentStatusEnum.SUCCESS
    assert payment.meta.gateway_state.captured is True


@pytest.mark.asyncio
async def test_flagged_coupon_rollback_is_retried(session_factory, seed, settlement_engine, monkeypatch):
    user_id = await seed.user()
    coupon_id = await seed.coupon(max_redemptions=5)
    subscription_id = await seed.subscription(user_id, coupon_id=coupon_id)
    payment_id = await seed.payment(user_id, PaymentableTypeEnum.SUBSCRIPTION, subscription_id, transaction_id="pi_cpn")

    async with session_factory() as session:
        await settlement_engine.state_machine(session).apply_outcome(
            payment_id, PaymentOutcome.APPROVED, Actor.webhook()
        )

    async def failing_rollback(self, user_id, coupon_id):
        raise SQLAlchemyError("deadlock detected")

    monkeypatch.setattr(CouponLedger, "rollback", failing_rollback)
    async with session_factory() as session:
        await settlement_engine.state_machine(session).apply_outcome(
            payment_id, PaymentOutcome.REJECTED, Actor.admin("admin-1")
        )
    monkeypatch.undo()
    assert (await seed.get(Payment, payment_id)).needs_coupon_rollback is True

    summary = await _sweep(session_factory, settlement_engine)

    assert summary.coupon_rollbacks == 1
    assert summary.checked == 0
    payment = await seed.get(Payment, payment_id)
    assert payment.needs_coupon_rollback is False
    assert payment.meta.coupon.rollback_error is None
    assert await seed.coupon_usage(coupon_id, user_id) == (0, 0)

    again = await _sweep(session_factory, settlement_engine)
    assert again.coupon_rollbacks == 0


@pytest.mark.asyncio
async def test_failed_sweep_marks_run_failed(session_factory, settlement_engine, monkeypatch):
    async def broken_sweep(self, *, run_id=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(ReconciliationService, "sweep", broken_sweep)
    worker = PaymentReconciliationWorker(session_factory, settlement_engine, interval_seconds=5)

    with pytest.raises(RuntimeError):
        await worker.run_once(triggered_by="manual")

    runs = await _runs(session_factory)
    assert len(runs) == 1
    assert runs[0].status == "failed"
    assert runs[0].error_message == "database unavailable"
    assert runs[0].metadata_json["error"] == "database unavailable"

    reconciliation = get_payment_store().snapshot().reconciliation
    assert reconciliation.last_status == "failed"
    assert reconciliation.last_error == "database unavailable"
