"""Close subscriptions whose paid period has ended."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from loguru import logger
from sqlalchemy import select

from settlement_api.db.session import SessionFactory, ensure_session
from settlement_api.models.subscription import Subscription, SubscriptionStatusEnum


async def expire_subscriptions(*, session_factory: SessionFactory, limit: int = 500) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)

    session = await ensure_session(session_factory)
    async with session as managed_session:
        result = await managed_session.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatusEnum.ACTIVE,
                Subscription.end_date.is_not(None),
                Subscription.end_date < now,
            )
            .order_by(Subscription.end_date)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        subscriptions = result.scalars().all()
        for subscription in subscriptions:
            subscription.status = SubscriptionStatusEnum.EXPIRED
            logger.info(
                "Subscription expired",
                purchasable_id=str(subscription.id),
                user_id=str(subscription.user_id),
            )
        await managed_session.commit()

    return {"expired": len(subscriptions)}


__all__ = ["expire_subscriptions"]
