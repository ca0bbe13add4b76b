from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from settlement_api.core.settings import settings


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(request: Request) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded"] = "ready"

    engine = getattr(request.app.state, "settlement_engine", None)
    if engine is not None and engine.dispatcher.is_running:
        components["side_effects"] = ComponentStatus(status="ready")
    else:
        components["side_effects"] = ComponentStatus(status="starting", detail="Side-effect workers not running")
        status = "degraded"

    checks = (
        ("reconciliation_worker", settings.reconciliation_worker_enabled, "payment_reconciliation_worker"),
        ("maintenance_scheduler", settings.maintenance_scheduler_enabled, "maintenance_scheduler"),
    )
    for name, enabled, state_key in checks:
        component = getattr(request.app.state, state_key, None)
        if not enabled:
            components[name] = ComponentStatus(status="disabled", detail="Disabled via settings")
        elif component is not None and component.is_running:
            components[name] = ComponentStatus(status="ready")
        else:
            components[name] = ComponentStatus(status="starting", detail=f"{name} not running")
            status = "degraded"

    return ReadinessPayload(status=status, components=components)
