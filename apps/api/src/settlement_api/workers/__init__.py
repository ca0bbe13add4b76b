"""Background workers supporting async processing."""

from .payment_reconciliation import PaymentReconciliationWorker

__all__ = ["PaymentReconciliationWorker"]
