"""Shipment creation clients. Carrier specifics stay behind the HTTP service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

import httpx
from loguru import logger

from settlement_api.core.settings import Settings


@dataclass(slots=True)
class ShipmentReceipt:
    order_id: UUID
    reference: str | None
    carrier: str | None = None


class ShipmentClient(Protocol):
    async def create_shipment_for_order(self, order_id: UUID) -> ShipmentReceipt:
        ...


class HttpShipmentClient:
    """Calls the shipping service; errors propagate to the side-effect dispatcher."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def create_shipment_for_order(self, order_id: UUID) -> ShipmentReceipt:
        headers = {"X-API-Key": self._api_key} if self._api_key else {}

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout_seconds)
            close_client = True

        try:
            response = await client.post(
                f"{self._base_url}/shipments",
                json={"order_id": str(order_id)},
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        finally:
            if close_client:
                await client.aclose()

        return ShipmentReceipt(
            order_id=order_id,
            reference=data.get("tracking_number") or data.get("reference"),
            carrier=data.get("carrier"),
        )


class LoggingShipmentClient:
    """Used when no shipping service is configured; records intent only."""

    async def create_shipment_for_order(self, order_id: UUID) -> ShipmentReceipt:
        logger.info("Shipping service not configured; shipment left for manual handling", order_id=str(order_id))
        return ShipmentReceipt(order_id=order_id, reference=None)


def build_shipment_client(settings: Settings) -> ShipmentClient:
    if settings.shipment_base_url:
        return HttpShipmentClient(
            settings.shipment_base_url,
            api_key=settings.shipment_api_key,
            timeout_seconds=settings.shipment_timeout_seconds,
        )
    return LoggingShipmentClient()
