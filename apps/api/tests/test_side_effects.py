import json
from uuid import uuid4

import httpx
import pytest

from settlement_api.models.order import Order, OrderStatusEnum
from settlement_api.models.payment import PaymentableTypeEnum
from settlement_api.observability.payments import get_payment_store
from settlement_api.services.notifications import HttpNotificationDispatcher, InMemoryNotificationDispatcher
from settlement_api.services.payments import Actor, PaymentOutcome
from settlement_api.services.shipping import HttpShipmentClient
from settlement_api.services.side_effects import SideEffect, SideEffectDispatcher


class ExplodingNotifier:
    async def notify(self, event_kind, payload):
        raise RuntimeError("notification service down")


def _dispatcher(notifier, shipment_client, session_factory=None, *, workers=2, queue_size=10):
    return SideEffectDispatcher(
        notifier=notifier,
        shipment_client=shipment_client,
        session_factory=session_factory,
        workers=workers,
        queue_size=queue_size,
    )


@pytest.mark.asyncio
async def test_started_dispatcher_drains_queue_on_stop(shipment_client):
    notifier = InMemoryNotificationDispatcher()
    dispatcher = _dispatcher(notifier, shipment_client)
    dispatcher.start()
    assert dispatcher.is_running is True

    payment_id = uuid4()
    await dispatcher.submit(
        [
            SideEffect.notification("payment.approved", payment_id, {"payment_id": str(payment_id)}),
            SideEffect.notification("payment.rejected", payment_id, {}),
            SideEffect.notification("payment.cancelled", payment_id, {}),
        ]
    )
    await dispatcher.stop()

    assert dispatcher.is_running is False
    assert sorted(notifier.kinds()) == ["payment.approved", "payment.cancelled", "payment.rejected"]
    assert get_payment_store().snapshot().side_effect_totals["succeeded"] == {"notify": 3}


@pytest.mark.asyncio
async def test_full_queue_falls_back_to_inline(shipment_client):
    notifier = InMemoryNotificationDispatcher()
    dispatcher = _dispatcher(notifier, shipment_client, workers=1, queue_size=1)
    dispatcher.start()

    payment_id = uuid4()
    await dispatcher.submit([SideEffect.notification(f"payment.kind{index}", payment_id, {}) for index in range(4)])
    await dispatcher.stop()

    assert sorted(notifier.kinds()) == [f"payment.kind{index}" for index in range(4)]


@pytest.mark.asyncio
async def test_failing_notification_is_counted_not_raised(shipment_client):
    dispatcher = _dispatcher(ExplodingNotifier(), shipment_client)

    delivered = await dispatcher.run(SideEffect.notification("payment.approved", uuid4(), {}))

    assert delivered is False
    assert get_payment_store().snapshot().side_effect_totals["failed"] == {"notify": 1}


@pytest.mark.asyncio
async def test_shipment_reference_moves_paid_order_to_shipped(session_factory, seed, notifier, shipment_client):
    user_id = await seed.user()
    order_id = await seed.order(user_id, status=OrderStatusEnum.PAID)
    shipment_client.reference = "TRK-1001"
    dispatcher = _dispatcher(notifier, shipment_client, session_factory)

    delivered = await dispatcher.run(SideEffect.shipment(uuid4(), order_id))

    assert delivered is True
    order = await seed.get(Order, order_id)
    assert order.status == OrderStatusEnum.SHIPPED
    assert order.shipment_reference == "TRK-1001"
    assert order.shipped_at is not None


@pytest.mark.asyncio
async def test_shipment_reference_skipped_for_cancelled_order(session_factory, seed, notifier, shipment_client):
    user_id = await seed.user()
    order_id = await seed.order(user_id, status=OrderStatusEnum.CANCELLED)
    shipment_client.reference = "TRK-1002"
    dispatcher = _dispatcher(notifier, shipment_client, session_factory)

    assert await dispatcher.run(SideEffect.shipment(uuid4(), order_id)) is True

    order = await seed.get(Order, order_id)
    assert order.status == OrderStatusEnum.CANCELLED
    assert order.shipment_reference is None


@pytest.mark.asyncio
async def test_shipment_failure_does_not_touch_order(session_factory, seed, notifier, shipment_client):
    user_id = await seed.user()
    order_id = await seed.order(user_id, status=OrderStatusEnum.PAID)
    shipment_client.error = httpx.ConnectError("shipping service unreachable")
    dispatcher = _dispatcher(notifier, shipment_client, session_factory)

    assert await dispatcher.run(SideEffect.shipment(uuid4(), order_id)) is False

    order = await seed.get(Order, order_id)
    assert order.status == OrderStatusEnum.PAID
    assert get_payment_store().snapshot().side_effect_totals["failed"] == {"shipment": 1}


@pytest.mark.asyncio
async def test_approved_order_is_shipped_after_commit(session_factory, seed, settlement_engine, shipment_client):
    user_id = await seed.user()
    order_id = await seed.order(user_id)
    payment_id = await seed.payment(user_id, PaymentableTypeEnum.ORDER, order_id, transaction_id="pi_ship")
    shipment_client.reference = "TRK-2001"

    async with session_factory() as session:
        await settlement_engine.state_machine(session).apply_outcome(
            payment_id, PaymentOutcome.APPROVED, Actor.webhook("evt_ship")
        )

    order = await seed.get(Order, order_id)
    assert order.status == OrderStatusEnum.SHIPPED
    assert order.shipment_reference == "TRK-2001"


@pytest.mark.asyncio
async def test_http_notification_dispatcher_posts_selected_events():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = HttpNotificationDispatcher(
            "https://notify.example.com/hooks/payments",
            event_kinds=["payment.approved"],
            http_client=client,
        )
        await dispatcher.notify("payment.approved", {"payment_id": "p-1"})
        await dispatcher.notify("payment.cancelled", {"payment_id": "p-1"})

    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert body["event"] == "payment.approved"
    assert body["payload"] == {"payment_id": "p-1"}
    assert "emitted_at" in body
    assert str(requests[0].url) == "https://notify.example.com/hooks/payments"


@pytest.mark.asyncio
async def test_http_notification_dispatcher_raises_on_server_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = HttpNotificationDispatcher("https://notify.example.com/hooks", http_client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await dispatcher.notify("payment.rejected", {})


@pytest.mark.asyncio
async def test_http_shipment_client_reads_tracking_number():
    order_id = uuid4()
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["api_key"] = request.headers.get("X-API-Key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"tracking_number": "TRK-3001", "carrier": "aramex"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        shipping = HttpShipmentClient("https://shipping.example.com/", api_key="ship-key", http_client=client)
        receipt = await shipping.create_shipment_for_order(order_id)

    assert receipt.reference == "TRK-3001"
    assert receipt.carrier == "aramex"
    assert seen == {"api_key": "ship-key", "body": {"order_id": str(order_id)}}
