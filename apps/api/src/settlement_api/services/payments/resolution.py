"""Translate a gateway's view of a transaction into a payment outcome."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from loguru import logger

from settlement_api.services.gateways import GatewayStatus, PaymentGatewayClient
from .outcomes import PaymentOutcome

_TERMINAL_OUTCOMES = {
    GatewayStatus.CAPTURED: PaymentOutcome.APPROVED,
    GatewayStatus.REJECTED: PaymentOutcome.REJECTED,
    GatewayStatus.EXPIRED: PaymentOutcome.EXPIRED,
}


@dataclass(slots=True)
class GatewayResolution:
    outcome: PaymentOutcome | None
    captured: bool = False


async def resolve_gateway_status(
    client: PaymentGatewayClient | None,
    status: GatewayStatus,
    *,
    transaction_id: str,
    amount: Decimal,
    currency: str,
) -> GatewayResolution:
    """Map ``status`` to an outcome, capturing authorised-only funds first.

    ``outcome`` is ``None`` while the gateway is still undecided. Capture
    failures propagate as ``TransientGatewayError``.
    """

    if status is GatewayStatus.AUTHORIZED:
        if client is None:
            return GatewayResolution(outcome=None)
        result = await client.capture(transaction_id, amount, currency)
        logger.info(
            "Captured authorised payment",
            transaction_id=transaction_id,
            captured_amount=str(result.captured_amount),
            gateway=client.name,
        )
        return GatewayResolution(outcome=PaymentOutcome.APPROVED, captured=True)

    return GatewayResolution(outcome=_TERMINAL_OUTCOMES.get(status))


__all__ = ["GatewayResolution", "resolve_gateway_status"]
