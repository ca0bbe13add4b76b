from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from settlement_api.jobs.payments import expire_stale_payments
from settlement_api.jobs.subscriptions import expire_subscriptions
from settlement_api.models.order import Order, OrderStatusEnum
from settlement_api.models.payment import Payment, PaymentStateActorEnum, PaymentStatusEnum, PaymentableTypeEnum
from settlement_api.models.subscription import Subscription, SubscriptionStatusEnum
from settlement_api.observability.scheduler import get_scheduler_store
from settlement_api.scheduling import (
    JobDefinition,
    MaintenanceJobScheduler,
    RetryPolicy,
    load_job_definitions,
    resolve_task,
)

SCHEDULE_PATH = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


@pytest.mark.asyncio
async def test_expire_stale_payments_only_touches_old_pending(session_factory, seed, settlement_engine, notifier):
    user_id = await seed.user()
    stale_order = await seed.order(user_id)
    fresh_order = await seed.order(user_id)
    stale = await seed.payment(
        user_id, PaymentableTypeEnum.ORDER, stale_order, transaction_id="pi_stale", age=timedelta(hours=3)
    )
    fresh = await seed.payment(user_id, PaymentableTypeEnum.ORDER, fresh_order, transaction_id="pi_fresh")

    result = await expire_stale_payments(
        session_factory=session_factory,
        engine=settlement_engine,
        timeout_minutes=60,
    )

    assert result == {"expired": 1, "skipped": 0, "failed": 0}
    expired = await seed.get(Payment, stale)
    assert expired.status == PaymentStatusEnum.FAILED
    assert expired.meta.failure_reason == "pending timeout"
    assert (await seed.get(Payment, fresh)).status == PaymentStatusEnum.PENDING
    assert (await seed.get(Order, stale_order)).status == OrderStatusEnum.CANCELLED
    assert (await seed.get(Order, fresh_order)).status == OrderStatusEnum.PENDING

    events = await seed.events(stale)
    assert events[0].actor_type == PaymentStateActorEnum.SYSTEM
    assert events[0].actor_id == "expire_stale_payments"
    assert notifier.kinds() == ["payment.expired"]


@pytest.mark.asyncio
async def test_expire_stale_payments_continues_past_broken_payment(session_factory, seed, settlement_engine):
    user_id = await seed.user()
    broken = await seed.payment(
        user_id, PaymentableTypeEnum.ORDER, uuid4(), transaction_id="pi_gone", age=timedelta(hours=4)
    )
    order_id = await seed.order(user_id)
    stale = await seed.payment(
        user_id, PaymentableTypeEnum.ORDER, order_id, transaction_id="pi_late", age=timedelta(hours=2)
    )

    result = await expire_stale_payments(
        session_factory=session_factory,
        engine=settlement_engine,
        timeout_minutes=60,
    )

    assert result == {"expired": 1, "skipped": 0, "failed": 1}
    assert (await seed.get(Payment, broken)).status == PaymentStatusEnum.PENDING
    assert (await seed.get(Payment, stale)).status == PaymentStatusEnum.FAILED
    assert (await seed.get(Order, order_id)).status == OrderStatusEnum.CANCELLED


@pytest.mark.asyncio
async def test_expire_stale_payments_with_nothing_to_do(session_factory):
    result = await expire_stale_payments(session_factory=session_factory, timeout_minutes=60)

    assert result == {"expired": 0, "skipped": 0, "failed": 0}


@pytest.mark.asyncio
async def test_expire_subscriptions_closes_lapsed_periods(session_factory, seed):
    user_id = await seed.user()
    now = datetime.now(timezone.utc)
    lapsed = await seed.subscription(
        user_id, status=SubscriptionStatusEnum.ACTIVE, end_date=now - timedelta(days=1)
    )
    running = await seed.subscription(
        user_id, status=SubscriptionStatusEnum.ACTIVE, end_date=now + timedelta(days=10)
    )
    pending = await seed.subscription(user_id, end_date=now - timedelta(days=1))

    result = await expire_subscriptions(session_factory=session_factory)

    assert result == {"expired": 1}
    assert (await seed.get(Subscription, lapsed)).status == SubscriptionStatusEnum.EXPIRED
    assert (await seed.get(Subscription, running)).status == SubscriptionStatusEnum.ACTIVE
    assert (await seed.get(Subscription, pending)).status == SubscriptionStatusEnum.PENDING


@pytest.mark.asyncio
async def test_wrapped_job_retries_then_succeeds():
    calls = []

    async def flaky_job(session_factory, limit: int = 1):
        calls.append((session_factory, limit))
        if len(calls) < 3:
            raise RuntimeError("database busy")
        return {"expired": limit}

    scheduler = MaintenanceJobScheduler(
        config_path=SCHEDULE_PATH,
        context={"session_factory": "factory", "engine": "engine"},
    )
    job = JobDefinition(
        id="flaky",
        task="tests.flaky_job",
        cron="* * * * *",
        kwargs={"limit": 5},
        retry=RetryPolicy(max_attempts=3, base_backoff_seconds=0, jitter_seconds=0),
    )

    result = await scheduler.wrap(flaky_job, job)()

    assert result == {"expired": 5}
    assert calls == [("factory", 5)] * 3
    metrics = get_scheduler_store().snapshot()["jobs"]["flaky"]
    assert metrics["totals"] == {"runs": 1, "success": 1, "failures": 0, "retries": 2, "consecutive_failures": 0}
    assert metrics["last_result"] == {"expired": 5}


@pytest.mark.asyncio
async def test_wrapped_job_records_final_failure():
    async def broken_job():
        raise RuntimeError("still broken")

    scheduler = MaintenanceJobScheduler(config_path=SCHEDULE_PATH, context={"session_factory": "factory"})
    job = JobDefinition(
        id="broken",
        task="tests.broken_job",
        cron="0 * * * *",
        retry=RetryPolicy(max_attempts=2, base_backoff_seconds=0, jitter_seconds=0),
    )

    assert await scheduler.wrap(broken_job, job)() is None

    metrics = get_scheduler_store().snapshot()["jobs"]["broken"]
    assert metrics["totals"]["failures"] == 1
    assert metrics["totals"]["retries"] == 1
    assert metrics["totals"]["consecutive_failures"] == 1
    assert metrics["last_error"] == "still broken"


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, base_backoff_seconds=10, backoff_multiplier=2, max_backoff_seconds=25)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [10, 20, 25]


def test_shipped_schedule_file_loads():
    config = load_job_definitions(SCHEDULE_PATH)

    assert config.timezone == "UTC"
    jobs = {job.id: job for job in config.jobs}
    assert set(jobs) == {"expire_stale_payments", "expire_subscriptions"}
    stale = jobs["expire_stale_payments"]
    assert stale.task == "settlement_api.jobs.payments.expire_stale_payments"
    assert stale.kwargs == {"limit": 200}
    assert stale.retry.max_attempts == 3
    assert stale.retry.max_backoff_seconds == 120
    assert jobs["expire_subscriptions"].retry.max_attempts == 2
    for job in config.jobs:
        assert resolve_task(job.task) is not None


def test_schedule_file_skips_incomplete_entries(tmp_path):
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
timezone = "Africa/Cairo"

[jobs.nightly]
task = "settlement_api.jobs.subscriptions.expire_subscriptions"
cron = "0 2 * * *"
enabled = false

[jobs.no_cron]
task = "settlement_api.jobs.payments.expire_stale_payments"
"""
    )

    config = load_job_definitions(config_path)

    assert config.timezone == "Africa/Cairo"
    assert [job.id for job in config.jobs] == ["nightly"]
    assert config.jobs[0].enabled is False
    assert config.jobs[0].retry.max_attempts == 1

    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_resolve_task_errors():
    with pytest.raises(ValueError):
        resolve_task("expire_stale_payments")
    with pytest.raises(AttributeError):
        resolve_task("settlement_api.jobs.payments.not_a_job")
    with pytest.raises(TypeError):
        resolve_task("settlement_api.jobs.payments.timedelta")


@pytest.mark.asyncio
async def test_scheduler_registers_enabled_jobs(session_factory, settlement_engine):
    scheduler = MaintenanceJobScheduler(
        config_path=SCHEDULE_PATH,
        context={"session_factory": session_factory, "engine": settlement_engine},
    )

    scheduler.start()
    try:
        health = scheduler.health()
        assert health["running"] is True
        assert health["configured_jobs"] == 2
        assert {job["id"] for job in health["jobs"]} == {"expire_stale_payments", "expire_subscriptions"}
    finally:
        await scheduler.stop()

    assert scheduler.is_running is False
