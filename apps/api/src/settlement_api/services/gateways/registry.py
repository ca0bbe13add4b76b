"""Maps payment methods and webhook routes to gateway clients and adapters."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping
from uuid import uuid4

from loguru import logger

from settlement_api.core.settings import Settings
from settlement_api.models.payment import PaymentMethodEnum
from settlement_api.models.webhook_event import WebhookGatewayEnum
from .base import (
    GatewayCaptureResult,
    GatewayPaymentStatus,
    GatewayRefundResult,
    GatewayStatus,
    PaymentGatewayClient,
    WebhookAdapter,
)
from .installments import InstallmentGatewayClient, InstallmentWebhookAdapter
from .stripe_gateway import StripeGatewayClient, StripeWebhookAdapter


class StubGatewayClient:
    """Fallback used in development when gateway credentials are absent."""

    def __init__(self, name: str) -> None:
        self.name = f"{name}-stub"

    async def get_payment(self, transaction_id: str) -> GatewayPaymentStatus:
        return GatewayPaymentStatus(transaction_id=transaction_id, status=GatewayStatus.PENDING, raw_status="stub")

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> GatewayCaptureResult:
        return GatewayCaptureResult(
            transaction_id=transaction_id,
            captured_amount=Decimal(amount),
            captured_at=datetime.now(timezone.utc),
            reference=f"stub-capture-{uuid4()}",
        )

    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        *,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        return GatewayRefundResult(
            transaction_id=transaction_id,
            refund_id=f"stub-refund-{uuid4()}",
            amount=Decimal(amount),
            refunded_at=datetime.now(timezone.utc),
        )


class GatewayRegistry:
    def __init__(
        self,
        clients: Mapping[PaymentMethodEnum, PaymentGatewayClient],
        webhooks: Mapping[WebhookGatewayEnum, WebhookAdapter],
    ) -> None:
        self._clients = dict(clients)
        self._webhooks = dict(webhooks)

    def client_for(self, method: PaymentMethodEnum) -> PaymentGatewayClient | None:
        """``None`` for methods that never touch a gateway (proofs, wallet points)."""

        return self._clients.get(method)

    def webhook_adapter(self, gateway: WebhookGatewayEnum) -> WebhookAdapter:
        try:
            return self._webhooks[gateway]
        except KeyError as exc:
            raise ValueError(f"No webhook adapter for gateway {gateway}") from exc


def build_gateway_registry(settings: Settings) -> GatewayRegistry:
    card_client: PaymentGatewayClient
    if settings.stripe_secret_key:
        card_client = StripeGatewayClient(settings.stripe_secret_key)
    else:
        logger.warning("Stripe secret key not configured; card payments use the stub gateway")
        card_client = StubGatewayClient("stripe")

    installment_client: PaymentGatewayClient
    if settings.installment_gateway_base_url:
        installment_client = InstallmentGatewayClient(
            settings.installment_gateway_base_url,
            api_key=settings.installment_gateway_api_key,
            timeout_seconds=settings.installment_gateway_timeout_seconds,
        )
    else:
        logger.warning("Installment gateway not configured; installment payments use the stub gateway")
        installment_client = StubGatewayClient("installments")

    return GatewayRegistry(
        clients={
            PaymentMethodEnum.CARD: card_client,
            PaymentMethodEnum.GATEWAY_INSTALLMENT: installment_client,
        },
        webhooks={
            WebhookGatewayEnum.STRIPE: StripeWebhookAdapter(settings.stripe_webhook_secret),
            WebhookGatewayEnum.INSTALLMENTS: InstallmentWebhookAdapter(settings.installment_gateway_webhook_secret),
        },
    )


__all__ = ["GatewayRegistry", "StubGatewayClient", "build_gateway_registry"]
