"""Settlement core tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUM_TYPES = {
    "currency_enum": ("EGP", "SAR", "AED", "USD", "EUR"),
    "coupon_discount_type_enum": ("percentage", "fixed"),
    "order_status_enum": ("pending", "paid", "shipped", "delivered", "cancelled"),
    "subscription_status_enum": ("pending", "active", "expired", "cancelled"),
    "programme_purchase_status_enum": ("pending", "complete", "cancelled"),
    "payment_status_enum": ("pending", "pending_verification", "success", "failed", "cancelled", "refunded"),
    "payment_method_enum": ("card", "gateway_installment", "manual_proof", "wallet_points"),
    "paymentable_type_enum": ("order", "subscription", "programme"),
    "payment_state_actor_enum": ("webhook", "reconciliation", "admin", "member", "system"),
    "loyalty_transaction_type_enum": ("earned", "spent", "reversed"),
    "loyalty_source_enum": ("order_purchase", "subscription_purchase", "programme_purchase", "reward_redemption"),
    "webhook_gateway_enum": ("stripe", "installments"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    for name, values in ENUM_TYPES.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({labels})")

    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="member"),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("loyalty_points >= 0", name="ck_users_loyalty_points_non_negative"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "coupons",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("discount_type", _enum("coupon_discount_type_enum"), nullable=False, server_default="percentage"),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("max_redemptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_redemptions_per_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_redemptions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("total_redemptions >= 0", name="ck_coupons_total_redemptions_non_negative"),
    )
    op.create_index("ix_coupons_code", "coupons", ["code"], unique=True)

    op.create_table(
        "user_coupon_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("coupon_id", _uuid(), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "coupon_id", name="uq_user_coupon_redemptions_user_coupon"),
        sa.CheckConstraint("usage_count >= 0", name="ck_user_coupon_redemptions_usage_non_negative"),
    )
    op.create_index("ix_user_coupon_redemptions_coupon_id", "user_coupon_redemptions", ["coupon_id"])

    op.create_table(
        "orders",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("status", _enum("order_status_enum"), nullable=False, server_default="pending"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", _enum("currency_enum"), nullable=False, server_default="EGP"),
        sa.Column("coupon_id", _uuid(), nullable=True),
        sa.Column("shipment_reference", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_orders_user_id", "orders", ["user_id"])

    op.create_table(
        "order_items",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("order_id", _uuid(), nullable=False),
        sa.Column("product_title", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "subscription_plans",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", _enum("currency_enum"), nullable=False, server_default="EGP"),
        sa.Column("subscription_period_days", sa.Integer(), nullable=False),
        sa.Column("gift_period_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("subscription_number", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("plan_id", _uuid(), nullable=False),
        sa.Column("status", _enum("subscription_status_enum"), nullable=False, server_default="pending"),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", _enum("currency_enum"), nullable=False, server_default="EGP"),
        sa.Column("period_days", sa.Integer(), nullable=False),
        sa.Column("gift_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coupon_id", _uuid(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])

    op.create_table(
        "programmes",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", _enum("currency_enum"), nullable=False, server_default="EGP"),
        sa.Column("loyalty_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        "programme_purchases",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("purchase_number", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("programme_id", _uuid(), nullable=False),
        sa.Column("status", _enum("programme_purchase_status_enum"), nullable=False, server_default="pending"),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", _enum("currency_enum"), nullable=False, server_default="EGP"),
        sa.Column("coupon_id", _uuid(), nullable=True),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["programme_id"], ["programmes.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_programme_purchases_user_id", "programme_purchases", ["user_id"])

    op.create_table(
        "payments",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", _enum("currency_enum"), nullable=False, server_default="EGP"),
        sa.Column("method", _enum("payment_method_enum"), nullable=False),
        sa.Column("status", _enum("payment_status_enum"), nullable=False, server_default="pending"),
        sa.Column("paymentable_type", _enum("paymentable_type_enum"), nullable=False),
        sa.Column("paymentable_id", _uuid(), nullable=False),
        sa.Column("transaction_id", sa.String(), nullable=True, unique=True),
        sa.Column("payment_reference", sa.String(), nullable=False, unique=True),
        sa.Column("proof_url", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("needs_coupon_rollback", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_status_created_at", "payments", ["status", "created_at"])
    op.create_index("ix_payments_paymentable", "payments", ["paymentable_type", "paymentable_id"])
    op.create_index("ix_payments_needs_coupon_rollback", "payments", ["needs_coupon_rollback"])

    op.create_table(
        "payment_state_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("payment_id", _uuid(), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("actor_type", _enum("payment_state_actor_enum"), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_payment_state_events_payment_id", "payment_state_events", ["payment_id"])

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("type", _enum("loyalty_transaction_type_enum"), nullable=False),
        sa.Column("source", _enum("loyalty_source_enum"), nullable=False),
        sa.Column("source_id", sa.String(length=64), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_loyalty_transactions_user_id", "loyalty_transactions", ["user_id"])
    op.create_index("ix_loyalty_transactions_source_key", "loyalty_transactions", ["source", "source_id", "type"])

    op.create_table(
        "webhook_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("gateway", _enum("webhook_gateway_enum"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("result", sa.String(length=32), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("gateway", "external_id", name="uq_webhook_events_gateway_external"),
    )
    op.create_index("ix_webhook_events_transaction_id", "webhook_events", ["transaction_id"])

    op.create_table(
        "payment_reconciliation_runs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("triggered_by", sa.String(length=64), nullable=False, server_default="scheduler"),
        sa.Column("checked_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolved_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("exhausted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("payment_reconciliation_runs")
    op.drop_table("webhook_events")
    op.drop_table("loyalty_transactions")
    op.drop_table("payment_state_events")
    op.drop_table("payments")
    op.drop_table("programme_purchases")
    op.drop_table("programmes")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("user_coupon_redemptions")
    op.drop_table("coupons")
    op.drop_table("users")

    for name in reversed(list(ENUM_TYPES)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
