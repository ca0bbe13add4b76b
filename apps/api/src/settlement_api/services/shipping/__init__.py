"""Shipment collaborator used once an order is paid."""

from .client import (
    HttpShipmentClient,
    LoggingShipmentClient,
    ShipmentClient,
    ShipmentReceipt,
    build_shipment_client,
)

__all__ = [
    "HttpShipmentClient",
    "LoggingShipmentClient",
    "ShipmentClient",
    "ShipmentReceipt",
    "build_shipment_client",
]
