"""Card payments processed through Stripe PaymentIntents."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

import stripe
from loguru import logger

from settlement_api.services.exceptions import TransientGatewayError, WebhookSignatureError
from .base import GatewayCaptureResult, GatewayEvent, GatewayPaymentStatus, GatewayRefundResult, GatewayStatus

_EVENT_STATUS: Dict[str, GatewayStatus] = {
    "payment_intent.created": GatewayStatus.PENDING,
    "payment_intent.processing": GatewayStatus.PENDING,
    "payment_intent.requires_action": GatewayStatus.PENDING,
    "payment_intent.amount_capturable_updated": GatewayStatus.AUTHORIZED,
    "payment_intent.succeeded": GatewayStatus.CAPTURED,
    "payment_intent.payment_failed": GatewayStatus.REJECTED,
    "payment_intent.canceled": GatewayStatus.EXPIRED,
    "charge.refunded": GatewayStatus.REFUNDED,
}


def _to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def intent_status(intent: Any) -> GatewayStatus:
    status = intent.get("status")
    if status == "succeeded":
        return GatewayStatus.CAPTURED
    if status == "requires_capture":
        return GatewayStatus.AUTHORIZED
    if status == "canceled":
        return GatewayStatus.EXPIRED
    if status == "requires_payment_method" and intent.get("last_payment_error"):
        return GatewayStatus.REJECTED
    if status in {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}:
        return GatewayStatus.PENDING
    return GatewayStatus.UNKNOWN


class StripeGatewayClient:
    """Thin async wrapper over the blocking Stripe SDK."""

    name = "stripe"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def get_payment(self, transaction_id: str) -> GatewayPaymentStatus:
        intent = await self._call(stripe.PaymentIntent.retrieve, transaction_id)
        amount = intent.get("amount")
        return GatewayPaymentStatus(
            transaction_id=transaction_id,
            status=intent_status(intent),
            raw_status=intent.get("status"),
            amount=Decimal(amount) / 100 if amount is not None else None,
        )

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> GatewayCaptureResult:
        intent = await self._call(
            stripe.PaymentIntent.capture,
            transaction_id,
            amount_to_capture=_to_minor_units(amount),
        )
        received = intent.get("amount_received") or _to_minor_units(amount)
        return GatewayCaptureResult(
            transaction_id=transaction_id,
            captured_amount=Decimal(received) / 100,
            captured_at=datetime.now(timezone.utc),
            reference=intent.get("latest_charge"),
        )

    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        *,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        params: Dict[str, Any] = {"payment_intent": transaction_id, "amount": _to_minor_units(amount)}
        if reason:
            params["metadata"] = {"reason": reason}
        refund = await self._call(stripe.Refund.create, **params)
        return GatewayRefundResult(
            transaction_id=transaction_id,
            refund_id=refund.get("id"),
            amount=Decimal(refund.get("amount") or 0) / 100,
            refunded_at=datetime.now(timezone.utc),
        )

    async def _call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe call failed", call=getattr(func, "__qualname__", str(func)), error=str(exc))
            raise TransientGatewayError(f"Stripe error: {exc}") from exc


class StripeWebhookAdapter:
    """Verifies ``Stripe-Signature`` headers and reads PaymentIntent events."""

    def __init__(self, webhook_secret: str) -> None:
        self._webhook_secret = webhook_secret

    @property
    def has_secret(self) -> bool:
        return bool(self._webhook_secret)

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        if not self._webhook_secret:
            return False
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(raw_body.decode("utf-8"), signature, self._webhook_secret)
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("Stripe webhook body is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid Stripe webhook signature") from exc
        return True

    def parse(self, raw_body: bytes) -> GatewayEvent | None:
        payload = json.loads(raw_body)
        event_type = payload.get("type") or ""
        status = _EVENT_STATUS.get(event_type)
        if status is None:
            return None

        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        transaction_id = obj.get("payment_intent") if obj.get("object") == "charge" else obj.get("id")
        return GatewayEvent(
            event_id=str(payload.get("id") or f"{transaction_id}:{event_type}"),
            event_type=event_type,
            status=status,
            transaction_id=transaction_id,
            reference=metadata.get("payment_reference"),
            raw=payload,
        )


__all__ = ["StripeGatewayClient", "StripeWebhookAdapter", "intent_status"]
