"""Loyalty points ledger."""

from .ledger import LoyaltyLedger

__all__ = ["LoyaltyLedger"]
