import pytest

from settlement_api.models.loyalty import LoyaltySourceEnum, LoyaltyTransactionTypeEnum
from settlement_api.services.exceptions import InsufficientPointsError
from settlement_api.services.loyalty import LoyaltyLedger


@pytest.mark.asyncio
async def test_award_is_written_once_per_source(session_factory, seed):
    user_id = await seed.user()
    source_id = "8d7c3f2a-order"

    async with session_factory() as session:
        ledger = LoyaltyLedger(session)
        entry = await ledger.award(user_id, 40, LoyaltySourceEnum.ORDER_PURCHASE, source_id, metadata={"payment_id": "p-1"})
        duplicate = await ledger.award(user_id, 40, LoyaltySourceEnum.ORDER_PURCHASE, source_id)
        await session.commit()

    assert entry is not None
    assert entry.type == LoyaltyTransactionTypeEnum.EARNED
    assert duplicate is None

    balance, ledger_sum, rows = await seed.loyalty(user_id)
    assert balance == 40
    assert ledger_sum == 40
    assert len(rows) == 1
    assert rows[0].metadata_json == {"payment_id": "p-1"}


@pytest.mark.asyncio
async def test_award_ignores_non_positive_points(session_factory, seed):
    user_id = await seed.user()

    async with session_factory() as session:
        entry = await LoyaltyLedger(session).award(user_id, 0, LoyaltySourceEnum.PROGRAMME_PURCHASE, "programme-1")
        await session.commit()

    assert entry is None
    balance, _, rows = await seed.loyalty(user_id)
    assert balance == 0
    assert rows == []


@pytest.mark.asyncio
async def test_reverse_clamps_at_zero_after_points_were_spent(session_factory, seed):
    user_id = await seed.user()

    async with session_factory() as session:
        ledger = LoyaltyLedger(session)
        await ledger.award(user_id, 30, LoyaltySourceEnum.SUBSCRIPTION_PURCHASE, "sub-1")
        await ledger.spend(user_id, 25, LoyaltySourceEnum.REWARD_REDEMPTION, "reward-1")
        reversal = await ledger.reverse(user_id, 30, LoyaltySourceEnum.SUBSCRIPTION_PURCHASE, "sub-1")
        await session.commit()

    assert reversal is not None
    assert reversal.points == -5
    assert reversal.metadata_json["requested_points"] == 30

    balance, ledger_sum, rows = await seed.loyalty(user_id)
    assert balance == 0
    assert ledger_sum == balance
    assert sorted(row.points for row in rows) == [-25, -5, 30]


@pytest.mark.asyncio
async def test_reverse_is_recorded_once(session_factory, seed):
    user_id = await seed.user()

    async with session_factory() as session:
        ledger = LoyaltyLedger(session)
        await ledger.award(user_id, 20, LoyaltySourceEnum.ORDER_PURCHASE, "order-1")
        first = await ledger.reverse(user_id, 20, LoyaltySourceEnum.ORDER_PURCHASE, "order-1")
        second = await ledger.reverse(user_id, 20, LoyaltySourceEnum.ORDER_PURCHASE, "order-1")
        await session.commit()

    assert first is not None
    assert second is None
    balance, ledger_sum, rows = await seed.loyalty(user_id)
    assert balance == 0
    assert ledger_sum == 0
    assert len(rows) == 2


@pytest.mark.asyncio
async def test_spend_rejects_overdraft(session_factory, seed):
    user_id = await seed.user()

    async with session_factory() as session:
        ledger = LoyaltyLedger(session)
        await ledger.award(user_id, 10, LoyaltySourceEnum.ORDER_PURCHASE, "order-2")
        with pytest.raises(InsufficientPointsError):
            await ledger.spend(user_id, 11, LoyaltySourceEnum.REWARD_REDEMPTION, "reward-2")
        assert await ledger.balance(user_id) == 10
        assert await ledger.ledger_sum(user_id) == 10
        await session.commit()
