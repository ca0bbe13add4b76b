"""Payment gateway clients and webhook adapters."""

from .base import (
    GatewayCaptureResult,
    GatewayEvent,
    GatewayPaymentStatus,
    GatewayRefundResult,
    GatewayStatus,
    PaymentGatewayClient,
    WebhookAdapter,
)
from .registry import GatewayRegistry, StubGatewayClient, build_gateway_registry

__all__ = [
    "GatewayCaptureResult",
    "GatewayEvent",
    "GatewayPaymentStatus",
    "GatewayRefundResult",
    "GatewayRegistry",
    "GatewayStatus",
    "PaymentGatewayClient",
    "StubGatewayClient",
    "WebhookAdapter",
    "build_gateway_registry",
]
