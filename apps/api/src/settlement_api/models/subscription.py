from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from settlement_api.db.base import Base, enum_values
from .currency import CurrencyEnum


class SubscriptionStatusEnum(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(
        SqlEnum(CurrencyEnum, values_callable=enum_values, name="currency_enum", create_type=False),
        nullable=False,
        server_default=CurrencyEnum.EGP.value,
    )
    subscription_period_days = Column(Integer, nullable=False)
    gift_period_days = Column(Integer, nullable=False, default=0, server_default="0")
    loyalty_points = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_number = Column(String, nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("subscription_plans.id", ondelete="RESTRICT"), nullable=False)
    status = Column(
        SqlEnum(SubscriptionStatusEnum, values_callable=enum_values, name="subscription_status_enum"),
        nullable=False,
        default=SubscriptionStatusEnum.PENDING,
        server_default=SubscriptionStatusEnum.PENDING.value,
    )
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(
        SqlEnum(CurrencyEnum, values_callable=enum_values, name="currency_enum", create_type=False),
        nullable=False,
        server_default=CurrencyEnum.EGP.value,
    )
    # Copied from the plan at purchase time so plan edits never move a paid period.
    period_days = Column(Integer, nullable=False)
    gift_days = Column(Integer, nullable=False, default=0, server_default="0")
    coupon_id = Column(UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True, index=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    plan = relationship("SubscriptionPlan", lazy="selectin")
