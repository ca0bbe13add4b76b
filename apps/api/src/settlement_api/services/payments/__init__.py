"""Payment settlement: state machine, webhook ingest, reconciliation and admin decisions."""

from .admin import AdminDecisionService, serialize_payment
from .engine import ReconciliationPolicy, SettlementEngine, build_engine
from .outcomes import Actor, PaymentOutcome
from .reconciliation import ReconciliationService, ReconciliationSummary
from .state_machine import PaymentStateMachine
from .webhooks import WebhookIngestService, WebhookResult

__all__ = [
    "Actor",
    "AdminDecisionService",
    "PaymentOutcome",
    "PaymentStateMachine",
    "ReconciliationPolicy",
    "ReconciliationService",
    "ReconciliationSummary",
    "SettlementEngine",
    "WebhookIngestService",
    "WebhookResult",
    "build_engine",
    "serialize_payment",
]
