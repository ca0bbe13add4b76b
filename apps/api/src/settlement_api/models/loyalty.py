"""Append-only loyalty points ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, JSON, String, func
from sqlalchemy.dialects.postgresql import UUID

from settlement_api.db.base import Base, enum_values


class LoyaltyTransactionTypeEnum(str, Enum):
    EARNED = "earned"
    SPENT = "spent"
    REVERSED = "reversed"


class LoyaltySourceEnum(str, Enum):
    ORDER_PURCHASE = "order_purchase"
    SUBSCRIPTION_PURCHASE = "subscription_purchase"
    PROGRAMME_PURCHASE = "programme_purchase"
    REWARD_REDEMPTION = "reward_redemption"


class LoyaltyTransaction(Base):
    """Signed points movement; a user's rows always sum to ``users.loyalty_points``."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        Index("ix_loyalty_transactions_source_key", "source", "source_id", "type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    points = Column(Integer, nullable=False)
    type = Column(SqlEnum(LoyaltyTransactionTypeEnum, values_callable=enum_values, name="loyalty_transaction_type_enum"), nullable=False)
    source = Column(SqlEnum(LoyaltySourceEnum, values_callable=enum_values, name="loyalty_source_enum"), nullable=False)
    source_id = Column(String(64), nullable=False)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
