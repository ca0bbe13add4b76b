from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from settlement_api.db.base import Base, enum_values
from .currency import CurrencyEnum


class ProgrammePurchaseStatusEnum(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class Programme(Base):
    __tablename__ = "programmes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(
        SqlEnum(CurrencyEnum, values_callable=enum_values, name="currency_enum", create_type=False),
        nullable=False,
        server_default=CurrencyEnum.EGP.value,
    )
    loyalty_points = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ProgrammePurchase(Base):
    __tablename__ = "programme_purchases"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    purchase_number = Column(String, nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    programme_id = Column(UUID(as_uuid=True), ForeignKey("programmes.id", ondelete="RESTRICT"), nullable=False)
    status = Column(
        SqlEnum(ProgrammePurchaseStatusEnum, values_callable=enum_values, name="programme_purchase_status_enum"),
        nullable=False,
        default=ProgrammePurchaseStatusEnum.PENDING,
        server_default=ProgrammePurchaseStatusEnum.PENDING.value,
    )
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(
        SqlEnum(CurrencyEnum, values_callable=enum_values, name="currency_enum", create_type=False),
        nullable=False,
        server_default=CurrencyEnum.EGP.value,
    )
    coupon_id = Column(UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    purchased_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    programme = relationship("Programme", lazy="selectin")
