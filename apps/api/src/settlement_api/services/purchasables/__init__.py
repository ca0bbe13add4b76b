"""Purchasable lifecycle handlers (orders, subscriptions, programme purchases)."""

from .activator import DEFAULT_HANDLERS, PurchasableActivator
from .base import ActivationResult, PurchasableHandler, ReversalResult

__all__ = [
    "ActivationResult",
    "DEFAULT_HANDLERS",
    "PurchasableActivator",
    "PurchasableHandler",
    "ReversalResult",
]
