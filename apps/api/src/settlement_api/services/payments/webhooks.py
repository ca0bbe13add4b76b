"""Gateway webhook ingestion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_api.models.payment import Payment
from settlement_api.models.webhook_event import WebhookEvent, WebhookGatewayEnum
from settlement_api.observability.payments import get_payment_store
from settlement_api.observability.tracing import settlement_span
from settlement_api.services.exceptions import (
    ConflictingStateError,
    LimitExceededError,
    PaymentValidationError,
    WebhookSignatureError,
)
from settlement_api.services.gateways import GatewayEvent, GatewayRegistry
from .outcomes import Actor
from .resolution import resolve_gateway_status
from .state_machine import PaymentStateMachine

# Deliveries that ended in one of these may be processed again on redelivery.
_RETRYABLE_RESULTS = frozenset({"error"})


@dataclass(slots=True)
class WebhookResult:
    result: str
    event_id: str | None = None
    verified: bool = False
    payment_id: UUID | None = None
    status: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "event_id": self.event_id,
            "verified": self.verified,
            "payment_id": str(self.payment_id) if self.payment_id else None,
            "status": self.status,
        }


class WebhookIngestService:
    """Verify, normalize, dedupe and apply one webhook delivery."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        gateways: GatewayRegistry,
        state_machine: PaymentStateMachine,
    ) -> None:
        self._db = db
        self._gateways = gateways
        self._state_machine = state_machine
        self._observability = get_payment_store()

    async def ingest(self, gateway: WebhookGatewayEnum | str, raw_body: bytes, signature: str | None) -> WebhookResult:
        gateway = WebhookGatewayEnum(gateway)
        adapter = self._gateways.webhook_adapter(gateway)

        with settlement_span("payment.webhook", gateway=gateway.value) as span:
            try:
                verified = adapter.verify(raw_body, signature)
            except WebhookSignatureError as exc:
                logger.warning("Rejected webhook with bad signature", gateway=gateway.value, error=str(exc))
                self._observability.record_webhook(gateway.value, "rejected", None, error=str(exc))
                raise
            if not verified:
                logger.warning("Webhook secret not configured; accepting unverified event", gateway=gateway.value)

            try:
                event = adapter.parse(raw_body)
            except (ValueError, AttributeError, TypeError) as exc:
                self._observability.record_webhook(gateway.value, "invalid", None, error=str(exc))
                raise PaymentValidationError(f"Malformed {gateway.value} webhook payload") from exc

            if event is None:
                logger.info("Ignoring webhook without a payment status", gateway=gateway.value)
                return self._finish(gateway, WebhookResult("ignored", verified=verified))

            span.set_attribute("settlement.event_id", event.event_id)
            return await self._handle(gateway, event, verified)

    async def _handle(self, gateway: WebhookGatewayEnum, event: GatewayEvent, verified: bool) -> WebhookResult:
        record = await self._find_record(gateway, event.event_id)
        if record is not None and record.result not in _RETRYABLE_RESULTS:
            logger.info(
                "Duplicate webhook delivery absorbed",
                gateway=gateway.value,
                event_id=event.event_id,
                transaction_id=event.transaction_id,
            )
            return self._finish(gateway, WebhookResult("duplicate", event.event_id, verified))

        if record is None:
            record = WebhookEvent(gateway=gateway, external_id=event.event_id)
            self._db.add(record)
        record.event_type = event.event_type
        record.transaction_id = event.transaction_id
        record.verified = verified
        record.result = "received"

        payment = await self._find_payment(event)
        if payment is None:
            record.result = "ignored"
            if not await self._commit_record():
                return self._finish(gateway, WebhookResult("duplicate", event.event_id, verified))
            logger.warning(
                "Webhook for unknown transaction ignored",
                gateway=gateway.value,
                event_id=event.event_id,
                transaction_id=event.transaction_id,
                reference=event.reference,
            )
            return self._finish(gateway, WebhookResult("ignored", event.event_id, verified))

        payment_id = payment.id
        if not payment.transaction_id and event.transaction_id:
            payment.transaction_id = event.transaction_id
        payment.meta = payment.meta.with_gateway_state(
            status=event.status.value,
            last_event_id=event.event_id,
            last_event_type=event.event_type,
            verified=verified,
            updated_at=datetime.now(timezone.utc),
        )
        if not await self._commit_record():
            return self._finish(gateway, WebhookResult("duplicate", event.event_id, verified, payment_id))
        record_id = record.id

        result = await self._apply(gateway, event, verified, payment)
        await self._store_result(record_id, result.result)
        return self._finish(gateway, result)

    async def _apply(
        self,
        gateway: WebhookGatewayEnum,
        event: GatewayEvent,
        verified: bool,
        payment: Payment,
    ) -> WebhookResult:
        payment_id = payment.id
        previous = payment.status
        try:
            resolution = await resolve_gateway_status(
                self._gateways.client_for(payment.method) if payment.is_open else None,
                event.status,
                transaction_id=payment.transaction_id or event.transaction_id or "",
                amount=payment.amount,
                currency=payment.currency.value,
            )
        except Exception as exc:
            await self._mark_error(gateway, event, str(exc))
            raise

        if resolution.outcome is None:
            logger.info(
                "Webhook status recorded without outcome",
                gateway=gateway.value,
                event_id=event.event_id,
                payment_id=str(payment_id),
                gateway_status=event.status.value,
            )
            return WebhookResult("recorded", event.event_id, verified, payment_id, previous.value)

        if resolution.outcome.target_status == previous:
            return WebhookResult("duplicate", event.event_id, verified, payment_id, previous.value)

        try:
            updated = await self._state_machine.apply_outcome(
                payment_id,
                resolution.outcome,
                Actor.webhook(event.event_id),
                note=f"{gateway.value}:{event.event_type}",
            )
        except ConflictingStateError as exc:
            logger.warning(
                "Webhook outcome conflicts with payment state",
                gateway=gateway.value,
                event_id=event.event_id,
                payment_id=str(payment_id),
                current=exc.current,
                requested=exc.requested,
            )
            return WebhookResult("conflict", event.event_id, verified, payment_id, exc.current)
        except LimitExceededError:
            return WebhookResult("limit_exceeded", event.event_id, verified, payment_id)
        except PaymentValidationError as exc:
            logger.warning(
                "Webhook outcome rejected by validation",
                gateway=gateway.value,
                event_id=event.event_id,
                payment_id=str(payment_id),
                error=str(exc),
            )
            return WebhookResult("invalid", event.event_id, verified, payment_id)
        except Exception as exc:
            await self._mark_error(gateway, event, str(exc))
            raise

        if resolution.captured:
            await self._mark_captured(payment_id)
        return WebhookResult("processed", event.event_id, verified, payment_id, updated.status.value)

    async def _find_record(self, gateway: WebhookGatewayEnum, event_id: str) -> WebhookEvent | None:
        result = await self._db.execute(
            select(WebhookEvent).where(
                WebhookEvent.gateway == gateway,
                WebhookEvent.external_id == event_id,
            )
        )
        return result.scalars().first()

    async def _find_payment(self, event: GatewayEvent) -> Payment | None:
        conditions = []
        if event.transaction_id:
            conditions.append(Payment.transaction_id == event.transaction_id)
        if event.reference:
            conditions.append(Payment.payment_reference == event.reference)
        if not conditions:
            return None

        result = await self._db.execute(
            select(Payment).where(or_(*conditions)).with_for_update().execution_options(populate_existing=True)
        )
        matches = result.scalars().all()
        # Transaction id wins over the reference when both match different rows.
        for payment in matches:
            if event.transaction_id and payment.transaction_id == event.transaction_id:
                return payment
        return matches[0] if matches else None

    async def _commit_record(self) -> bool:
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            return False
        return True

    async def _store_result(self, record_id: UUID, result: str) -> None:
        stored = await self._db.get(WebhookEvent, record_id, populate_existing=True)
        if stored is None:
            return
        stored.result = result
        await self._db.commit()

    async def _mark_error(self, gateway: WebhookGatewayEnum, event: GatewayEvent, error: str) -> None:
        await self._db.rollback()
        record = await self._find_record(gateway, event.event_id)
        if record is not None:
            record.result = "error"
            await self._db.commit()
        logger.error(
            "Webhook processing failed; redelivery will be accepted",
            gateway=gateway.value,
            event_id=event.event_id,
            transaction_id=event.transaction_id,
            error=error,
        )
        self._observability.record_webhook(gateway.value, "error", event.event_id, error=error)

    async def _mark_captured(self, payment_id: UUID) -> None:
        payment = await self._db.get(Payment, payment_id, populate_existing=True, with_for_update=True)
        if payment is None:
            return
        payment.meta = payment.meta.with_gateway_state(captured=True)
        await self._db.commit()

    def _finish(self, gateway: WebhookGatewayEnum, result: WebhookResult) -> WebhookResult:
        self._observability.record_webhook(gateway.value, result.result, result.event_id)
        logger.info(
            "Webhook handled",
            gateway=gateway.value,
            event_id=result.event_id,
            result=result.result,
            verified=result.verified,
            payment_id=str(result.payment_id) if result.payment_id else None,
        )
        return result


__all__ = ["WebhookIngestService", "WebhookResult"]
