"""Worker wiring for periodic payment reconciliation sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.core.settings import settings
from settlement_api.db.session import SessionFactory, ensure_session
from settlement_api.models.reconciliation import PaymentReconciliationRun
from settlement_api.observability.payments import get_payment_store
from settlement_api.services.payments import SettlementEngine


class PaymentReconciliationWorker:
    """Periodically asks the gateways about payments still pending locally."""

    def __init__(
        self,
        session_factory: SessionFactory,
        engine: SettlementEngine,
        *,
        interval_seconds: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self._trigger_label = trigger_label or settings.reconciliation_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Payment reconciliation worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._engine.policy.batch_size,
            max_attempts=self._engine.policy.max_attempts,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Payment reconciliation worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, int]:
        """Execute a single sweep and persist a run row describing it."""

        trigger = triggered_by or self._trigger_label
        observability = get_payment_store()

        session = await ensure_session(self._session_factory)
        async with session as managed_session:
            run = PaymentReconciliationRun(triggered_by=trigger, status="running")
            managed_session.add(run)
            await managed_session.commit()
            run_id = run.id

            try:
                summary = await self._engine.reconciliation(managed_session).sweep(run_id=str(run_id))
            except Exception as exc:
                await managed_session.rollback()
                await self._finish_run(
                    managed_session,
                    run_id,
                    status="failed",
                    summary={},
                    metadata=self._build_run_metadata(trigger, error=str(exc)),
                    error=str(exc),
                )
                observability.record_reconciliation_run("failed", {}, error=str(exc))
                logger.exception("Payment reconciliation sweep failed", run_id=str(run_id), error=str(exc))
                raise

            counts = summary.as_dict()
            await self._finish_run(
                managed_session,
                run_id,
                status="completed",
                summary=counts,
                metadata=self._build_run_metadata(trigger, coupon_rollbacks=summary.coupon_rollbacks),
            )
            observability.record_reconciliation_run("completed", counts)
            logger.info("Payment reconciliation sweep completed", run_id=str(run_id), trigger=trigger, **counts)

        return counts

    async def _finish_run(
        self,
        session: AsyncSession,
        run_id,
        *,
        status: str,
        summary: Dict[str, int],
        metadata: Dict[str, object | None],
        error: str | None = None,
    ) -> None:
        run = await session.get(PaymentReconciliationRun, run_id, populate_existing=True)
        if run is None:  # pragma: no cover - row written at the start of this run
            return
        run.status = status
        run.completed_at = datetime.now(timezone.utc)
        run.checked_count = summary.get("checked", 0)
        run.resolved_count = summary.get("resolved", 0)
        run.failed_count = summary.get("failed", 0)
        run.exhausted_count = summary.get("exhausted", 0)
        run.error_message = error
        run.metadata_json = metadata
        await session.commit()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - logged in run_once
                logger.exception("Payment reconciliation iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def _build_run_metadata(
        self,
        trigger: str,
        *,
        coupon_rollbacks: int | None = None,
        error: str | None = None,
    ) -> Dict[str, object | None]:
        policy = self._engine.policy
        metadata: Dict[str, object | None] = {
            "triggered_by": trigger,
            "batch_size": policy.batch_size,
            "max_attempts": policy.max_attempts,
            "min_age_seconds": policy.min_age_seconds,
            "max_age_hours": policy.max_age_hours,
        }
        if coupon_rollbacks is not None:
            metadata["coupon_rollbacks"] = coupon_rollbacks
        if error:
            metadata["error"] = error
        return metadata


__all__ = ["PaymentReconciliationWorker"]
