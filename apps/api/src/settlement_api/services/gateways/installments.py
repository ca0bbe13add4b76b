"""Buy-now-pay-later gateway: REST client plus HMAC-signed webhooks."""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

import httpx
from loguru import logger

from settlement_api.services.exceptions import TransientGatewayError, WebhookSignatureError
from .base import GatewayCaptureResult, GatewayEvent, GatewayPaymentStatus, GatewayRefundResult, GatewayStatus

_STATUS_MAP: Dict[str, GatewayStatus] = {
    "created": GatewayStatus.PENDING,
    "new": GatewayStatus.PENDING,
    "pending": GatewayStatus.PENDING,
    "authorized": GatewayStatus.AUTHORIZED,
    "closed": GatewayStatus.CAPTURED,
    "captured": GatewayStatus.CAPTURED,
    "rejected": GatewayStatus.REJECTED,
    "declined": GatewayStatus.REJECTED,
    "expired": GatewayStatus.EXPIRED,
    "refunded": GatewayStatus.REFUNDED,
}


def normalize_status(raw_status: str | None) -> GatewayStatus:
    return _STATUS_MAP.get((raw_status or "").strip().lower(), GatewayStatus.UNKNOWN)


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


class InstallmentGatewayClient:
    name = "installments"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def get_payment(self, transaction_id: str) -> GatewayPaymentStatus:
        data = await self._request("GET", f"/payments/{transaction_id}")
        amount = data.get("amount")
        return GatewayPaymentStatus(
            transaction_id=transaction_id,
            status=normalize_status(data.get("status")),
            raw_status=data.get("status"),
            amount=Decimal(str(amount)) if amount is not None else None,
        )

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> GatewayCaptureResult:
        data = await self._request(
            "POST",
            f"/payments/{transaction_id}/captures",
            payload={"amount": str(amount), "currency": currency},
        )
        return GatewayCaptureResult(
            transaction_id=transaction_id,
            captured_amount=Decimal(str(data.get("amount", amount))),
            captured_at=datetime.now(timezone.utc),
            reference=data.get("id"),
        )

    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        *,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        data = await self._request(
            "POST",
            f"/payments/{transaction_id}/refunds",
            payload={"amount": str(amount), "currency": currency, "reason": reason},
        )
        return GatewayRefundResult(
            transaction_id=transaction_id,
            refund_id=str(data.get("id") or ""),
            amount=Decimal(str(data.get("amount", amount))),
            refunded_at=datetime.now(timezone.utc),
        )

    async def _request(self, method: str, path: str, *, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key}"}

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout_seconds)
            close_client = True

        try:
            response = await client.request(method, f"{self._base_url}{path}", json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Installment gateway call failed", method=method, path=path, error=str(exc))
            raise TransientGatewayError(f"Installment gateway error: {exc}") from exc
        finally:
            if close_client:
                await client.aclose()


class InstallmentWebhookAdapter:
    """HMAC-SHA512 over the raw body, hex encoded in the signature header."""

    def __init__(self, webhook_secret: str) -> None:
        self._webhook_secret = webhook_secret

    @property
    def has_secret(self) -> bool:
        return bool(self._webhook_secret)

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        if not self._webhook_secret:
            return False
        if not signature:
            raise WebhookSignatureError("Missing webhook signature header")
        expected = sign_payload(raw_body, self._webhook_secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise WebhookSignatureError("Invalid webhook signature")
        return True

    def parse(self, raw_body: bytes) -> GatewayEvent | None:
        payload = json.loads(raw_body)
        payment = payload.get("payment") if isinstance(payload.get("payment"), dict) else payload
        transaction_id = payment.get("id")
        raw_status = payment.get("status")
        if not transaction_id or not raw_status:
            return None

        order = payment.get("order") or {}
        event_type = payload.get("event") or f"payment.{str(raw_status).lower()}"
        return GatewayEvent(
            event_id=str(payload.get("event_id") or f"{transaction_id}:{str(raw_status).lower()}"),
            event_type=event_type,
            status=normalize_status(raw_status),
            transaction_id=str(transaction_id),
            reference=order.get("reference_id") or payment.get("reference_id"),
            raw=payload,
        )


__all__ = [
    "InstallmentGatewayClient",
    "InstallmentWebhookAdapter",
    "normalize_status",
    "sign_payload",
]
