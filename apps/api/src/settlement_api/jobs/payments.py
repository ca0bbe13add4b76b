"""Expire payments that never received an outcome."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from loguru import logger
from sqlalchemy import select

from settlement_api.core.settings import settings
from settlement_api.db.session import SessionFactory, ensure_session
from settlement_api.models.payment import Payment, PaymentStatusEnum
from settlement_api.services.exceptions import ConflictingStateError
from settlement_api.services.payments import Actor, PaymentOutcome, PaymentStateMachine, SettlementEngine


async def expire_stale_payments(
    *,
    session_factory: SessionFactory,
    engine: SettlementEngine | None = None,
    timeout_minutes: int | None = None,
    limit: int = 200,
) -> Dict[str, Any]:
    """Apply the EXPIRED outcome to PENDING payments older than the timeout."""

    timeout = timedelta(minutes=timeout_minutes or settings.payment_pending_timeout_minutes)
    cutoff = datetime.now(timezone.utc) - timeout
    actor = Actor.system("expire_stale_payments")

    session = await ensure_session(session_factory)
    async with session as managed_session:
        result = await managed_session.execute(
            select(Payment.id)
            .where(Payment.status == PaymentStatusEnum.PENDING, Payment.created_at < cutoff)
            .order_by(Payment.created_at)
            .limit(limit)
        )
        payment_ids = list(result.scalars().all())
        await managed_session.commit()
        if not payment_ids:
            logger.info("No stale payments to expire", cutoff=cutoff.isoformat())
            return {"expired": 0, "skipped": 0, "failed": 0}

        machine = engine.state_machine(managed_session) if engine else PaymentStateMachine(managed_session)
        expired = 0
        skipped = 0
        failed = 0
        for payment_id in payment_ids:
            try:
                await machine.apply_outcome(payment_id, PaymentOutcome.EXPIRED, actor, note="pending timeout")
            except ConflictingStateError as exc:
                skipped += 1
                logger.info("Stale payment moved on before expiry", payment_id=str(payment_id), current=exc.current)
                continue
            except Exception as exc:
                await managed_session.rollback()
                failed += 1
                logger.exception("Stale payment could not be expired", payment_id=str(payment_id), error=str(exc))
                continue
            expired += 1

    logger.info(
        "Stale payment sweep finished",
        expired=expired,
        skipped=skipped,
        failed=failed,
        cutoff=cutoff.isoformat(),
    )
    return {"expired": expired, "skipped": skipped, "failed": failed}


__all__ = ["expire_stale_payments"]
