"""In-memory observability helper for settlement flows."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class WebhookEventLog:
    last_event_at: datetime | None = None
    last_gateway: str | None = None
    last_event_id: str | None = None
    last_result: str | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None


@dataclass
class ReconciliationRunLog:
    last_run_at: datetime | None = None
    last_status: str | None = None
    last_summary: Dict[str, int] = field(default_factory=dict)
    last_error: str | None = None


@dataclass
class PaymentObservabilitySnapshot:
    outcome_totals: Dict[str, Dict[str, int]]
    webhook_totals: Dict[str, Dict[str, int]]
    side_effect_totals: Dict[str, Dict[str, int]]
    webhook_events: WebhookEventLog
    reconciliation: ReconciliationRunLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "outcomes": self.outcome_totals,
            "webhooks": {
                "totals": self.webhook_totals,
                "events": {
                    "last_event_at": _iso(self.webhook_events.last_event_at),
                    "last_gateway": self.webhook_events.last_gateway,
                    "last_event_id": self.webhook_events.last_event_id,
                    "last_result": self.webhook_events.last_result,
                    "last_failure_at": _iso(self.webhook_events.last_failure_at),
                    "last_failure_reason": self.webhook_events.last_failure_reason,
                },
            },
            "side_effects": self.side_effect_totals,
            "reconciliation": {
                "last_run_at": _iso(self.reconciliation.last_run_at),
                "last_status": self.reconciliation.last_status,
                "last_summary": self.reconciliation.last_summary,
                "last_error": self.reconciliation.last_error,
            },
        }


@dataclass
class PaymentObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _outcome_totals: Dict[str, Counter] = field(default_factory=dict)
    _webhook_totals: Dict[str, Counter] = field(default_factory=dict)
    _side_effect_totals: Dict[str, Counter] = field(
        default_factory=lambda: {"succeeded": Counter(), "failed": Counter()}
    )
    _webhook_events: WebhookEventLog = field(default_factory=WebhookEventLog)
    _reconciliation: ReconciliationRunLog = field(default_factory=ReconciliationRunLog)

    def record_outcome(self, outcome: str, result: str) -> None:
        """``result`` is one of applied, duplicate, conflict, rejected, limit_exceeded."""

        with self._lock:
            self._outcome_totals.setdefault(outcome, Counter())[result] += 1

    def record_webhook(self, gateway: str, result: str, event_id: str | None, error: str | None = None) -> None:
        with self._lock:
            self._webhook_totals.setdefault(gateway, Counter())[result] += 1
            now = _utcnow()
            self._webhook_events.last_event_at = now
            self._webhook_events.last_gateway = gateway
            self._webhook_events.last_event_id = event_id
            self._webhook_events.last_result = result
            if error:
                self._webhook_events.last_failure_at = now
                self._webhook_events.last_failure_reason = error

    def record_side_effect(self, kind: str, success: bool) -> None:
        with self._lock:
            self._side_effect_totals["succeeded" if success else "failed"][kind] += 1

    def record_reconciliation_run(self, status: str, summary: Dict[str, int], error: str | None = None) -> None:
        with self._lock:
            self._reconciliation = ReconciliationRunLog(
                last_run_at=_utcnow(),
                last_status=status,
                last_summary=dict(summary),
                last_error=error,
            )

    def snapshot(self) -> PaymentObservabilitySnapshot:
        with self._lock:
            return PaymentObservabilitySnapshot(
                outcome_totals={key: dict(counter) for key, counter in self._outcome_totals.items()},
                webhook_totals={key: dict(counter) for key, counter in self._webhook_totals.items()},
                side_effect_totals={key: dict(counter) for key, counter in self._side_effect_totals.items()},
                webhook_events=WebhookEventLog(**vars(self._webhook_events)),
                reconciliation=ReconciliationRunLog(
                    last_run_at=self._reconciliation.last_run_at,
                    last_status=self._reconciliation.last_status,
                    last_summary=dict(self._reconciliation.last_summary),
                    last_error=self._reconciliation.last_error,
                ),
            )

    def reset(self) -> None:
        with self._lock:
            self._outcome_totals.clear()
            self._webhook_totals.clear()
            for counter in self._side_effect_totals.values():
                counter.clear()
            self._webhook_events = WebhookEventLog()
            self._reconciliation = ReconciliationRunLog()


_PAYMENT_STORE = PaymentObservabilityStore()


def get_payment_store() -> PaymentObservabilityStore:
    return _PAYMENT_STORE
