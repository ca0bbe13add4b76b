"""Append-only loyalty ledger with a cached per-user balance."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.loyalty import LoyaltySourceEnum, LoyaltyTransaction, LoyaltyTransactionTypeEnum
from settlement_api.models.user import User
from settlement_api.services.exceptions import InsufficientPointsError


class LoyaltyLedger:
    """Mutates points inside the caller's transaction; never commits."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def award(
        self,
        user_id: UUID,
        points: int,
        source: LoyaltySourceEnum,
        source_id: UUID | str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LoyaltyTransaction | None:
        """Credit points once per (source, source_id).

        Returns the new transaction, or ``None`` when nothing was written
        because the amount is not positive or the key was already awarded.
        """

        if points <= 0:
            return None

        key = str(source_id)
        existing = await self._find(source, key, LoyaltyTransactionTypeEnum.EARNED)
        if existing is not None:
            logger.info(
                "Loyalty award already recorded",
                user_id=str(user_id),
                source=source.value,
                source_id=key,
                transaction_id=str(existing.id),
            )
            return None

        entry = LoyaltyTransaction(
            user_id=user_id,
            points=points,
            type=LoyaltyTransactionTypeEnum.EARNED,
            source=source,
            source_id=key,
            metadata_json=metadata or {},
        )
        self._db.add(entry)
        await self._shift_balance(user_id, points)
        await self._db.flush()
        logger.info("Loyalty points awarded", user_id=str(user_id), points=points, source=source.value, source_id=key)
        return entry

    async def reverse(
        self,
        user_id: UUID,
        points: int,
        source: LoyaltySourceEnum,
        source_id: UUID | str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LoyaltyTransaction | None:
        """Compensate an earlier award, clamping the balance at zero."""

        if points <= 0:
            return None

        key = str(source_id)
        if await self._find(source, key, LoyaltyTransactionTypeEnum.REVERSED) is not None:
            logger.info("Loyalty reversal already recorded", user_id=str(user_id), source=source.value, source_id=key)
            return None

        balance = await self._locked_balance(user_id)
        deducted = min(points, balance)
        if deducted < points:
            logger.warning(
                "Loyalty reversal clamped at zero balance",
                user_id=str(user_id),
                source=source.value,
                source_id=key,
                requested_points=points,
                deducted_points=deducted,
                balance=balance,
            )

        entry = LoyaltyTransaction(
            user_id=user_id,
            points=-deducted,
            type=LoyaltyTransactionTypeEnum.REVERSED,
            source=source,
            source_id=key,
            metadata_json={**(metadata or {}), "requested_points": points},
        )
        self._db.add(entry)
        if deducted:
            await self._shift_balance(user_id, -deducted)
        await self._db.flush()
        logger.info("Loyalty points reversed", user_id=str(user_id), points=deducted, source=source.value, source_id=key)
        return entry

    async def spend(
        self,
        user_id: UUID,
        points: int,
        source: LoyaltySourceEnum,
        source_id: UUID | str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> LoyaltyTransaction:
        """Debit points for a reward redemption."""

        if points <= 0:
            raise ValueError("Spend requires a positive amount")

        balance = await self._locked_balance(user_id)
        if balance < points:
            raise InsufficientPointsError(f"User {user_id} has {balance} points, {points} requested")

        entry = LoyaltyTransaction(
            user_id=user_id,
            points=-points,
            type=LoyaltyTransactionTypeEnum.SPENT,
            source=source,
            source_id=str(source_id),
            metadata_json=metadata or {},
        )
        self._db.add(entry)
        await self._shift_balance(user_id, -points)
        await self._db.flush()
        return entry

    async def earned_for(self, source: LoyaltySourceEnum, source_id: UUID | str) -> LoyaltyTransaction | None:
        return await self._find(source, str(source_id), LoyaltyTransactionTypeEnum.EARNED)

    async def balance(self, user_id: UUID) -> int:
        result = await self._db.execute(select(User.loyalty_points).where(User.id == user_id))
        return int(result.scalar_one())

    async def ledger_sum(self, user_id: UUID) -> int:
        result = await self._db.execute(
            select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(LoyaltyTransaction.user_id == user_id)
        )
        return int(result.scalar_one())

    async def _find(
        self,
        source: LoyaltySourceEnum,
        source_id: str,
        entry_type: LoyaltyTransactionTypeEnum,
    ) -> LoyaltyTransaction | None:
        stmt = (
            select(LoyaltyTransaction)
            .where(
                LoyaltyTransaction.source == source,
                LoyaltyTransaction.source_id == source_id,
                LoyaltyTransaction.type == entry_type,
            )
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalars().first()

    async def _locked_balance(self, user_id: UUID) -> int:
        stmt = select(User.loyalty_points).where(User.id == user_id).with_for_update()
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def _shift_balance(self, user_id: UUID, delta: int) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(loyalty_points=User.loyalty_points + delta)
            .execution_options(synchronize_session="fetch")
        )
        await self._db.execute(stmt)


__all__ = ["LoyaltyLedger"]
