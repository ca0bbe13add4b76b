"""Recurring maintenance job entrypoints."""

__all__ = ["payments", "subscriptions"]
