"""SQLAlchemy models package."""

from .currency import CurrencyEnum  # noqa: F401
from .user import User, UserRoleEnum  # noqa: F401
from .coupon import Coupon, CouponDiscountTypeEnum, UserCouponRedemption  # noqa: F401
from .order import Order, OrderItem, OrderStatusEnum  # noqa: F401
from .subscription import Subscription, SubscriptionPlan, SubscriptionStatusEnum  # noqa: F401
from .programme import Programme, ProgrammePurchase, ProgrammePurchaseStatusEnum  # noqa: F401
from .payment import (  # noqa: F401
    Payment,
    PaymentMethodEnum,
    PaymentStateActorEnum,
    PaymentStateEvent,
    PaymentStatusEnum,
    PaymentableTypeEnum,
)
from .loyalty import LoyaltySourceEnum, LoyaltyTransaction, LoyaltyTransactionTypeEnum  # noqa: F401
from .webhook_event import WebhookEvent, WebhookGatewayEnum  # noqa: F401
from .reconciliation import PaymentReconciliationRun  # noqa: F401
