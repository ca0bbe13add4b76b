from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.api.dependencies.security import require_admin
from settlement_api.api.dependencies.session import get_engine
from settlement_api.api.errors import to_http_exception
from settlement_api.db.session import get_session
from settlement_api.services.exceptions import SettlementError
from settlement_api.services.payments import SettlementEngine, serialize_payment


router = APIRouter(prefix="/admin/payments", tags=["admin-payments"])


class DecisionRequest(BaseModel):
    note: str | None = Field(None, max_length=1000, description="Operator note stored with the decision")


class PendingPaymentsResponse(BaseModel):
    total: int
    items: List[Dict[str, Any]]


class DecisionResponse(BaseModel):
    payment: Dict[str, Any]


@router.get("/pending", response_model=PendingPaymentsResponse)
async def list_pending_payments(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> PendingPaymentsResponse:
    """Payments awaiting manual verification, oldest first."""
    try:
        payload = await engine.admin(db).list_pending(limit=limit, offset=offset)
    except SettlementError as error:
        raise to_http_exception(error)
    return PendingPaymentsResponse(**payload)


@router.post("/{payment_id}/approve", response_model=DecisionResponse)
async def approve_payment(
    payment_id: UUID,
    request: DecisionRequest | None = None,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> DecisionResponse:
    note = request.note if request else None
    try:
        payment = await engine.admin(db).approve(payment_id, admin_id, note=note)
    except SettlementError as error:
        logger.warning("Admin approval refused", payment_id=str(payment_id), admin_id=admin_id, error=str(error))
        raise to_http_exception(error)
    return DecisionResponse(payment=serialize_payment(payment))


@router.post("/{payment_id}/reject", response_model=DecisionResponse)
async def reject_payment(
    payment_id: UUID,
    request: DecisionRequest | None = None,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> DecisionResponse:
    """Reject a pending payment or overturn an earlier approval."""
    reason = request.note if request else None
    try:
        payment = await engine.admin(db).reject(payment_id, admin_id, reason=reason)
    except SettlementError as error:
        logger.warning("Admin rejection refused", payment_id=str(payment_id), admin_id=admin_id, error=str(error))
        raise to_http_exception(error)
    return DecisionResponse(payment=serialize_payment(payment))


@router.post("/{payment_id}/cancel", response_model=DecisionResponse)
async def cancel_payment(
    payment_id: UUID,
    request: DecisionRequest | None = None,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> DecisionResponse:
    reason = request.note if request else None
    try:
        payment = await engine.admin(db).cancel(payment_id, admin_id, reason=reason)
    except SettlementError as error:
        raise to_http_exception(error)
    return DecisionResponse(payment=serialize_payment(payment))


@router.post("/{payment_id}/refund", response_model=DecisionResponse)
async def refund_payment(
    payment_id: UUID,
    request: DecisionRequest | None = None,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> DecisionResponse:
    reason = request.note if request else None
    try:
        payment = await engine.admin(db).refund(payment_id, admin_id, reason=reason)
    except SettlementError as error:
        logger.warning("Admin refund failed", payment_id=str(payment_id), admin_id=admin_id, error=str(error))
        raise to_http_exception(error)
    return DecisionResponse(payment=serialize_payment(payment))
