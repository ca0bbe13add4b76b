from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.api.dependencies.security import require_checkout_api_key
from settlement_api.api.dependencies.session import get_engine, require_member_session
from settlement_api.api.errors import to_http_exception
from settlement_api.db.session import get_session
from settlement_api.models.payment import Payment, PaymentStateEvent
from settlement_api.models.user import User
from settlement_api.models.webhook_event import WebhookGatewayEnum
from settlement_api.services.exceptions import SettlementError
from settlement_api.services.payments import SettlementEngine, serialize_payment


router = APIRouter(prefix="/payments", tags=["payments"])


class WebhookResponse(BaseModel):
    """Outcome of one webhook delivery."""
    result: str = Field(..., description="processed, recorded, duplicate, ignored, conflict, limit_exceeded or invalid")
    event_id: str | None = Field(None, description="Gateway event identifier")
    verified: bool = Field(..., description="Whether the signature was checked against a configured secret")
    payment_id: str | None = Field(None, description="Matched payment, if any")
    status: str | None = Field(None, description="Payment status after processing")


class ProofRequest(BaseModel):
    proof_url: str = Field(..., min_length=1, description="Location of the uploaded transfer receipt")


class PaymentResponse(BaseModel):
    payment: Dict[str, Any]
    events: List[Dict[str, Any]] = Field(default_factory=list)


@router.post("/webhooks/{gateway}", response_model=WebhookResponse)
async def handle_gateway_webhook(
    gateway: str,
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    x_signature: str | None = Header(None, alias="X-Signature"),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> WebhookResponse:
    """Receive a gateway webhook and feed its outcome into the payment state machine.

    Unknown transactions and duplicate deliveries are acknowledged with 200 so
    the gateway stops retrying them.
    """
    try:
        gateway_enum = WebhookGatewayEnum(gateway)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown payment gateway")

    signature = stripe_signature if gateway_enum == WebhookGatewayEnum.STRIPE else x_signature
    raw_body = await request.body()
    try:
        result = await engine.webhooks(db).ingest(gateway_enum, raw_body, signature)
    except SettlementError as error:
        logger.warning("Webhook rejected", gateway=gateway, error=str(error))
        raise to_http_exception(error)

    return WebhookResponse(**result.as_dict())


@router.post("/{payment_id}/proof", response_model=PaymentResponse)
async def attach_payment_proof(
    payment_id: UUID,
    request: ProofRequest,
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
    engine: SettlementEngine = Depends(get_engine),
) -> PaymentResponse:
    """Attach a manual transfer receipt and queue the payment for admin review."""
    user_id = user.id
    try:
        payment = await engine.state_machine(db).attach_proof(payment_id, user_id, request.proof_url)
    except SettlementError as error:
        raise to_http_exception(error)
    return PaymentResponse(payment=serialize_payment(payment))


@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def get_payment(
    payment_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> PaymentResponse:
    """Return a payment with its state transition history."""
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    result = await db.execute(
        select(PaymentStateEvent)
        .where(PaymentStateEvent.payment_id == payment_id)
        .order_by(PaymentStateEvent.created_at, PaymentStateEvent.id)
    )
    events = [event.as_dict() for event in result.scalars().all()]
    return PaymentResponse(payment=serialize_payment(payment), events=events)
