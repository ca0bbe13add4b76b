"""Seed development users, a subscription plan and a programme into the API database."""

from __future__ import annotations

import asyncio
from decimal import Decimal
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement_api.core.settings import settings
from settlement_api.models.programme import Programme
from settlement_api.models.subscription import SubscriptionPlan
from settlement_api.models.user import User, UserRoleEnum


class SeedUser(TypedDict):
    email: str
    display_name: str
    role: str


DEV_USERS: list[SeedUser] = [
    {
        "email": os.getenv("DEV_MEMBER_EMAIL", "member@settlement.dev").lower(),
        "display_name": "Member QA",
        "role": UserRoleEnum.MEMBER.value,
    },
    {
        "email": os.getenv("DEV_ADMIN_EMAIL", "admin@settlement.dev").lower(),
        "display_name": "Admin QA",
        "role": UserRoleEnum.ADMIN.value,
    },
]


async def seed_users(session: AsyncSession) -> None:
    for user in DEV_USERS:
        with session.no_autoflush:
            existing = await session.execute(select(User).where(User.email == user["email"]))
        record = existing.scalar_one_or_none()

        if record:
            record.display_name = user["display_name"]
            record.role = user["role"]
        else:
            session.add(User(email=user["email"], display_name=user["display_name"], role=user["role"]))
    await session.commit()


async def seed_catalog(session: AsyncSession) -> None:
    plan = await session.scalar(select(SubscriptionPlan).where(SubscriptionPlan.name == "Monthly"))
    if plan is None:
        session.add(
            SubscriptionPlan(
                name="Monthly",
                price=Decimal("300.00"),
                subscription_period_days=30,
                gift_period_days=7,
                loyalty_points=30,
            )
        )
    programme = await session.scalar(select(Programme).where(Programme.name == "Strength Basics"))
    if programme is None:
        session.add(Programme(name="Strength Basics", price=Decimal("450.00"), loyalty_points=45))
    await session.commit()


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_users(session)
            await seed_catalog(session)
        print("Development users and catalog ready")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
