"""Coupon definitions and per-user redemption counters."""

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from settlement_api.db.base import Base, enum_values


class CouponDiscountTypeEnum(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("total_redemptions >= 0", name="ck_coupons_total_redemptions_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)
    discount_type = Column(
        SqlEnum(CouponDiscountTypeEnum, values_callable=enum_values, name="coupon_discount_type_enum"),
        nullable=False,
        default=CouponDiscountTypeEnum.PERCENTAGE,
        server_default=CouponDiscountTypeEnum.PERCENTAGE.value,
    )
    discount_value = Column(Numeric(12, 2), nullable=False)
    # 0 means unlimited for both caps.
    max_redemptions = Column(Integer, nullable=False, default=0, server_default="0")
    max_redemptions_per_user = Column(Integer, nullable=False, default=1, server_default="1")
    total_redemptions = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class UserCouponRedemption(Base):
    __tablename__ = "user_coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("user_id", "coupon_id", name="uq_user_coupon_redemptions_user_coupon"),
        CheckConstraint("usage_count >= 0", name="ck_user_coupon_redemptions_usage_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    coupon_id = Column(UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_count = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
