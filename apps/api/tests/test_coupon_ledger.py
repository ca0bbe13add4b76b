import asyncio

import pytest

from settlement_api.models.payment import PaymentableTypeEnum
from settlement_api.services.coupons import CouponLedger
from settlement_api.services.exceptions import LimitExceededError


@pytest.mark.asyncio
async def test_redeem_counts_user_and_global_usage(session_factory, seed):
    user_id = await seed.user()
    coupon_id = await seed.coupon(max_redemptions=5, max_redemptions_per_user=1)

    async with session_factory() as session:
        redemption = await CouponLedger(session).redeem(user_id, coupon_id)
        await session.commit()

    assert redemption is not None
    assert redemption.usage_count == 1
    assert redemption.total_redemptions == 1
    assert await seed.coupon_usage(coupon_id, user_id) == (1, 1)


@pytest.mark.asyncio
async def test_per_user_cap_raises_and_leaves_counters(session_factory, seed):
    user_id = await seed.user()
    coupon_id = await seed.coupon(max_redemptions=0, max_redemptions_per_user=1)

    async with session_factory() as session:
        await CouponLedger(session).redeem(user_id, coupon_id)
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(LimitExceededError) as excinfo:
            await CouponLedger(session).redeem(user_id, coupon_id)
        await session.rollback()

    assert excinfo.value.scope == "user"
    assert excinfo.value.coupon_id == coupon_id
    assert await seed.coupon_usage(coupon_id, user_id) == (1, 1)


@pytest.mark.asyncio
async def test_global_cap_is_enforced_across_users(session_factory, seed):
    first_user = await seed.user()
    second_user = await seed.user()
    coupon_id = await seed.coupon(max_redemptions=1, max_redemptions_per_user=0)

    async with session_factory() as session:
        await CouponLedger(session).redeem(first_user, coupon_id)
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(LimitExceededError) as excinfo:
            await CouponLedger(session).redeem(second_user, coupon_id)
        # The per-user row inserted before the global check goes away with the transaction.
        await session.rollback()

    assert excinfo.value.scope == "global"
    assert await seed.coupon_usage(coupon_id, first_user) == (1, 1)
    assert await seed.coupon_usage(coupon_id, second_user) == (1, 0)


@pytest.mark.asyncio
async def test_rollback_returns_one_use(session_factory, seed):
    user_id = await seed.user()
    coupon_id = await seed.coupon(max_redemptions=0, max_redemptions_per_user=2)

    async with session_factory() as session:
        ledger = CouponLedger(session)
        await ledger.redeem(user_id, coupon_id)
        await ledger.redeem(user_id, coupon_id)
        await session.commit()
    assert await seed.coupon_usage(coupon_id, user_id) == (2, 2)

    async with session_factory() as session:
        ledger = CouponLedger(session)
        assert await ledger.rollback(user_id, coupon_id) is True
        await session.commit()
    assert await seed.coupon_usage(coupon_id, user_id) == (1, 1)

    async with session_factory() as session:
        ledger = CouponLedger(session)
        assert await ledger.rollback(user_id, coupon_id) is True
        assert await ledger.rollback(user_id, coupon_id) is False
        await session.commit()
    assert await seed.coupon_usage(coupon_id, user_id) == (0, 0)


@pytest.mark.asyncio
async def test_availability_counts_in_flight_purchases(session_factory, seed):
    user_id = await seed.user()
    other_user = await seed.user()
    coupon_id = await seed.coupon(max_redemptions=2, max_redemptions_per_user=0)
    order_id = await seed.order(user_id, coupon_id=coupon_id)
    await seed.subscription(other_user, coupon_id=coupon_id)

    async with session_factory() as session:
        ledger = CouponLedger(session)
        crowded = await ledger.check_availability(user_id, coupon_id)
        excluding_own = await ledger.check_availability(
            user_id,
            coupon_id,
            exclude=(PaymentableTypeEnum.ORDER, order_id),
        )

    assert crowded.available is False
    assert crowded.reason == "global_limit"
    assert crowded.in_flight_global == 2
    assert crowded.in_flight_user == 1

    assert excluding_own.available is True
    assert excluding_own.in_flight_global == 1
    assert excluding_own.in_flight_user == 0


@pytest.mark.asyncio
async def test_availability_reports_user_limit_and_inactive(session_factory, seed):
    user_id = await seed.user()
    limited = await seed.coupon(max_redemptions=0, max_redemptions_per_user=1)
    inactive = await seed.coupon(is_active=False)
    await seed.programme_purchase(user_id, coupon_id=limited)

    async with session_factory() as session:
        ledger = CouponLedger(session)
        user_limited = await ledger.check_availability(user_id, limited)
        disabled = await ledger.check_availability(user_id, inactive)

    assert user_limited.reason == "user_limit"
    assert user_limited.as_dict()["in_flight_user"] == 1
    assert disabled.reason == "inactive"
    assert disabled.available is False


@pytest.mark.asyncio
async def test_concurrent_redeems_for_last_user_slot(file_session_factory, file_seed):
    user_id = await file_seed.user()
    coupon_id = await file_seed.coupon(max_redemptions=0, max_redemptions_per_user=1)

    async def attempt() -> str:
        async with file_session_factory() as session:
            try:
                await CouponLedger(session).redeem(user_id, coupon_id)
            except LimitExceededError as exc:
                await session.rollback()
                return f"limit:{exc.scope}"
            await session.commit()
            return "redeemed"

    results = await asyncio.gather(attempt(), attempt())

    assert sorted(results) == ["limit:user", "redeemed"]
    assert await file_seed.coupon_usage(coupon_id, user_id) == (1, 1)
