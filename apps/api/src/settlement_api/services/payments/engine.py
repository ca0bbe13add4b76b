"""Wiring for the settlement services.

The engine owns the long-lived collaborators (gateways, side-effect
dispatcher) and hands out per-session services; nothing here holds a
database connection.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.core.settings import Settings
from settlement_api.db.session import SessionFactory
from settlement_api.services.gateways import GatewayRegistry, build_gateway_registry
from settlement_api.services.notifications import build_notification_dispatcher
from settlement_api.services.shipping import build_shipment_client
from settlement_api.services.side_effects import SideEffectDispatcher
from .admin import AdminDecisionService
from .reconciliation import ReconciliationService
from .state_machine import PaymentStateMachine
from .webhooks import WebhookIngestService


@dataclass
class ReconciliationPolicy:
    min_age_seconds: int = 300
    max_age_hours: int = 72
    batch_size: int = 50
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationPolicy":
        return cls(
            min_age_seconds=settings.reconciliation_min_age_seconds,
            max_age_hours=settings.reconciliation_max_age_hours,
            batch_size=settings.reconciliation_batch_size,
            max_attempts=settings.reconciliation_max_attempts,
        )


@dataclass
class SettlementEngine:
    session_factory: SessionFactory
    gateways: GatewayRegistry
    dispatcher: SideEffectDispatcher
    policy: ReconciliationPolicy
    clock: Callable[[], datetime] | None = None

    def state_machine(self, db: AsyncSession) -> PaymentStateMachine:
        return PaymentStateMachine(db, dispatcher=self.dispatcher, gateways=self.gateways, clock=self.clock)

    def webhooks(self, db: AsyncSession) -> WebhookIngestService:
        return WebhookIngestService(db, gateways=self.gateways, state_machine=self.state_machine(db))

    def admin(self, db: AsyncSession) -> AdminDecisionService:
        return AdminDecisionService(db, state_machine=self.state_machine(db))

    def reconciliation(self, db: AsyncSession) -> ReconciliationService:
        return ReconciliationService(
            db,
            gateways=self.gateways,
            state_machine=self.state_machine(db),
            min_age_seconds=self.policy.min_age_seconds,
            max_age_hours=self.policy.max_age_hours,
            batch_size=self.policy.batch_size,
            max_attempts=self.policy.max_attempts,
            clock=self.clock,
        )

    async def start(self) -> None:
        self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()


def build_engine(settings: Settings, session_factory: SessionFactory) -> SettlementEngine:
    dispatcher = SideEffectDispatcher(
        notifier=build_notification_dispatcher(settings),
        shipment_client=build_shipment_client(settings),
        session_factory=session_factory,
        workers=settings.side_effect_workers,
        queue_size=settings.side_effect_queue_size,
    )
    return SettlementEngine(
        session_factory=session_factory,
        gateways=build_gateway_registry(settings),
        dispatcher=dispatcher,
        policy=ReconciliationPolicy.from_settings(settings),
    )


__all__ = ["ReconciliationPolicy", "SettlementEngine", "build_engine"]
