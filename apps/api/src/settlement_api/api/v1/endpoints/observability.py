"""Observability endpoints for settlement flows."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from settlement_api.api.dependencies.security import require_checkout_api_key
from settlement_api.observability.payments import get_payment_store
from settlement_api.observability.scheduler import get_scheduler_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/payments",
    dependencies=[Depends(require_checkout_api_key)],
    summary="Payment settlement observability snapshot",
)
async def get_payments_snapshot(request: Request) -> dict[str, object]:
    snapshot = get_payment_store().snapshot().as_dict()
    scheduler = getattr(request.app.state, "maintenance_scheduler", None)
    snapshot["scheduler"] = scheduler.health() if scheduler is not None else get_scheduler_store().snapshot()
    return snapshot
