import hashlib
import hmac
import sys
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from settlement_api.app import create_app  # noqa: E402
from settlement_api.db.base import Base  # noqa: E402
from settlement_api.db.session import get_session  # noqa: E402
from settlement_api.models.coupon import Coupon, UserCouponRedemption  # noqa: E402
from settlement_api.models.loyalty import LoyaltyTransaction  # noqa: E402
from settlement_api.models.order import Order, OrderItem, OrderStatusEnum  # noqa: E402
from settlement_api.models.payment import (  # noqa: E402
    Payment,
    PaymentMethodEnum,
    PaymentStateEvent,
    PaymentStatusEnum,
    PaymentableTypeEnum,
)
from settlement_api.models.programme import Programme, ProgrammePurchase, ProgrammePurchaseStatusEnum  # noqa: E402
from settlement_api.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatusEnum  # noqa: E402
from settlement_api.models.user import User  # noqa: E402
from settlement_api.models.webhook_event import WebhookGatewayEnum  # noqa: E402
from settlement_api.observability.payments import get_payment_store  # noqa: E402
from settlement_api.observability.scheduler import get_scheduler_store  # noqa: E402
from settlement_api.services.gateways import (  # noqa: E402
    GatewayCaptureResult,
    GatewayPaymentStatus,
    GatewayRefundResult,
    GatewayRegistry,
    GatewayStatus,
)
from settlement_api.services.gateways.installments import InstallmentWebhookAdapter, sign_payload  # noqa: E402
from settlement_api.services.gateways.stripe_gateway import StripeWebhookAdapter  # noqa: E402
from settlement_api.services.notifications import InMemoryNotificationDispatcher  # noqa: E402
from settlement_api.services.payments import ReconciliationPolicy, SettlementEngine  # noqa: E402
from settlement_api.services.shipping import ShipmentReceipt  # noqa: E402
from settlement_api.services.side_effects import SideEffectDispatcher  # noqa: E402

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
INSTALLMENT_WEBHOOK_SECRET = "installment-test-secret"


class FakeGatewayClient:
    """Scriptable gateway: ``statuses`` maps transaction ids to a status or an exception."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.statuses: Dict[str, Any] = {}
        self.capture_error: Exception | None = None
        self.lookups: List[str] = []
        self.captures: List[tuple[str, Decimal, str]] = []
        self.refunds: List[tuple[str, Decimal, str, str | None]] = []

    async def get_payment(self, transaction_id: str) -> GatewayPaymentStatus:
        self.lookups.append(transaction_id)
        status = self.statuses.get(transaction_id, GatewayStatus.PENDING)
        if isinstance(status, Exception):
            raise status
        return GatewayPaymentStatus(transaction_id=transaction_id, status=status, raw_status=status.value)

    async def capture(self, transaction_id: str, amount: Decimal, currency: str) -> GatewayCaptureResult:
        if self.capture_error is not None:
            raise self.capture_error
        self.captures.append((transaction_id, Decimal(amount), currency))
        return GatewayCaptureResult(
            transaction_id=transaction_id,
            captured_amount=Decimal(amount),
            captured_at=datetime.now(timezone.utc),
            reference=f"cap_{transaction_id}",
        )

    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        *,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        self.refunds.append((transaction_id, Decimal(amount), currency, reason))
        return GatewayRefundResult(
            transaction_id=transaction_id,
            refund_id=f"re_{transaction_id}",
            amount=Decimal(amount),
            refunded_at=datetime.now(timezone.utc),
        )


class FakeShipmentClient:
    def __init__(self) -> None:
        self.reference: str | None = None
        self.error: Exception | None = None
        self.requested: List[UUID] = []

    async def create_shipment_for_order(self, order_id: UUID) -> ShipmentReceipt:
        self.requested.append(order_id)
        if self.error is not None:
            raise self.error
        return ShipmentReceipt(order_id=order_id, reference=self.reference, carrier="test-carrier")


class Seeder:
    """Writes fixture rows through short-lived sessions and reads them back the same way."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:04d}"

    async def _persist(self, *rows: Any) -> None:
        async with self._session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def user(self, *, role: str = "member") -> UUID:
        user = User(id=uuid4(), email=f"{self._next('user')}@example.com", display_name="Test User", role=role)
        await self._persist(user)
        return user.id

    async def coupon(
        self,
        *,
        max_redemptions: int = 0,
        max_redemptions_per_user: int = 1,
        is_active: bool = True,
    ) -> UUID:
        coupon = Coupon(
            id=uuid4(),
            code=self._next("COUPON"),
            discount_value=Decimal("10.00"),
            max_redemptions=max_redemptions,
            max_redemptions_per_user=max_redemptions_per_user,
            total_redemptions=0,
            is_active=is_active,
        )
        await self._persist(coupon)
        return coupon.id

    async def order(
        self,
        user_id: UUID,
        *,
        coupon_id: UUID | None = None,
        points_per_unit: int = 10,
        quantity: int = 2,
        status: OrderStatusEnum = OrderStatusEnum.PENDING,
    ) -> UUID:
        order = Order(
            id=uuid4(),
            order_number=self._next("ORD"),
            user_id=user_id,
            status=status,
            subtotal=Decimal("100.00"),
            discount=Decimal("0"),
            total=Decimal("100.00"),
            coupon_id=coupon_id,
            items=[
                OrderItem(
                    product_title="Protein Bar",
                    quantity=quantity,
                    unit_price=Decimal("50.00"),
                    total_price=Decimal("50.00") * quantity,
                    loyalty_points=points_per_unit,
                )
            ],
        )
        await self._persist(order)
        return order.id

    async def subscription(
        self,
        user_id: UUID,
        *,
        coupon_id: UUID | None = None,
        loyalty_points: int = 30,
        period_days: int = 30,
        gift_days: int = 7,
        status: SubscriptionStatusEnum = SubscriptionStatusEnum.PENDING,
        end_date: datetime | None = None,
    ) -> UUID:
        plan = SubscriptionPlan(
            id=uuid4(),
            name=self._next("Plan"),
            price=Decimal("300.00"),
            subscription_period_days=period_days,
            gift_period_days=gift_days,
            loyalty_points=loyalty_points,
        )
        subscription = Subscription(
            id=uuid4(),
            subscription_number=self._next("SUB"),
            user_id=user_id,
            plan_id=plan.id,
            status=status,
            price=Decimal("300.00"),
            period_days=period_days,
            gift_days=gift_days,
            coupon_id=coupon_id,
            end_date=end_date,
        )
        await self._persist(plan, subscription)
        return subscription.id

    async def programme_purchase(
        self,
        user_id: UUID,
        *,
        coupon_id: UUID | None = None,
        loyalty_points: int = 45,
    ) -> UUID:
        programme = Programme(id=uuid4(), name=self._next("Programme"), price=Decimal("450.00"), loyalty_points=loyalty_points)
        purchase = ProgrammePurchase(
            id=uuid4(),
            purchase_number=self._next("PRG"),
            user_id=user_id,
            programme_id=programme.id,
            status=ProgrammePurchaseStatusEnum.PENDING,
            price=Decimal("450.00"),
            coupon_id=coupon_id,
        )
        await self._persist(programme, purchase)
        return purchase.id

    async def payment(
        self,
        user_id: UUID,
        paymentable_type: PaymentableTypeEnum,
        paymentable_id: UUID,
        *,
        method: PaymentMethodEnum = PaymentMethodEnum.CARD,
        status: PaymentStatusEnum = PaymentStatusEnum.PENDING,
        transaction_id: str | None = None,
        payment_reference: str | None = None,
        proof_url: str | None = None,
        amount: Decimal = Decimal("100.00"),
        age: timedelta = timedelta(minutes=10),
        metadata: Dict[str, Any] | None = None,
    ) -> UUID:
        payment = Payment(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            method=method,
            status=status,
            paymentable_type=paymentable_type,
            paymentable_id=paymentable_id,
            transaction_id=transaction_id,
            payment_reference=payment_reference or self._next("PAY"),
            proof_url=proof_url,
            metadata_json=metadata or {},
            created_at=datetime.now(timezone.utc) - age,
        )
        await self._persist(payment)
        return payment.id

    async def get(self, model: Any, row_id: UUID) -> Any:
        async with self._session_factory() as session:
            return await session.get(model, row_id)

    async def events(self, payment_id: UUID) -> List[PaymentStateEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentStateEvent).where(PaymentStateEvent.payment_id == payment_id)
            )
            return list(result.scalars().all())

    async def loyalty(self, user_id: UUID) -> tuple[int, int, List[LoyaltyTransaction]]:
        """Cached balance, ledger sum and ledger rows for the user."""

        async with self._session_factory() as session:
            balance = await session.scalar(select(User.loyalty_points).where(User.id == user_id))
            ledger_sum = await session.scalar(
                select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(
                    LoyaltyTransaction.user_id == user_id
                )
            )
            rows = await session.execute(select(LoyaltyTransaction).where(LoyaltyTransaction.user_id == user_id))
            return int(balance), int(ledger_sum), list(rows.scalars().all())

    async def coupon_usage(self, coupon_id: UUID, user_id: UUID) -> tuple[int, int]:
        """(total_redemptions, usage_count for the user); a missing per-user row counts as 0."""

        async with self._session_factory() as session:
            total = await session.scalar(select(Coupon.total_redemptions).where(Coupon.id == coupon_id))
            usage = await session.scalar(
                select(UserCouponRedemption.usage_count).where(
                    UserCouponRedemption.user_id == user_id,
                    UserCouponRedemption.coupon_id == coupon_id,
                )
            )
            return int(total or 0), int(usage or 0)


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def installment_signature(payload: bytes, secret: str = INSTALLMENT_WEBHOOK_SECRET) -> str:
    return sign_payload(payload, secret)


@pytest.fixture(autouse=True)
def reset_observability():
    get_payment_store().reset()
    get_scheduler_store().reset()
    yield
    get_payment_store().reset()
    get_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions get separate connections."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        future=True,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def file_seed(file_session_factory) -> Seeder:
    return Seeder(file_session_factory)


@pytest.fixture
def card_gateway() -> FakeGatewayClient:
    return FakeGatewayClient("stripe-fake")


@pytest.fixture
def installment_gateway() -> FakeGatewayClient:
    return FakeGatewayClient("installments-fake")


@pytest.fixture
def gateway_registry(card_gateway, installment_gateway) -> GatewayRegistry:
    return GatewayRegistry(
        clients={
            PaymentMethodEnum.CARD: card_gateway,
            PaymentMethodEnum.GATEWAY_INSTALLMENT: installment_gateway,
        },
        webhooks={
            WebhookGatewayEnum.STRIPE: StripeWebhookAdapter(STRIPE_WEBHOOK_SECRET),
            WebhookGatewayEnum.INSTALLMENTS: InstallmentWebhookAdapter(INSTALLMENT_WEBHOOK_SECRET),
        },
    )


@pytest.fixture
def notifier() -> InMemoryNotificationDispatcher:
    return InMemoryNotificationDispatcher()


@pytest.fixture
def shipment_client() -> FakeShipmentClient:
    return FakeShipmentClient()


@pytest.fixture
def settlement_engine(session_factory, gateway_registry, notifier, shipment_client) -> SettlementEngine:
    # The dispatcher is never started here, so side effects run inline on submit.
    dispatcher = SideEffectDispatcher(
        notifier=notifier,
        shipment_client=shipment_client,
        session_factory=session_factory,
        workers=2,
        queue_size=10,
    )
    return SettlementEngine(
        session_factory=session_factory,
        gateways=gateway_registry,
        dispatcher=dispatcher,
        policy=ReconciliationPolicy(min_age_seconds=60, max_age_hours=72, batch_size=50, max_attempts=3),
    )


@pytest_asyncio.fixture
async def app_with_db(session_factory, settlement_engine):
    app = create_app(engine=settlement_engine)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def sign_stripe():
    return stripe_signature


@pytest.fixture
def sign_installments():
    return installment_signature
