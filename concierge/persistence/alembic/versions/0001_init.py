"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("setup_fee_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("renewal_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        # Confirmation inserts use ON CONFLICT against this constraint.
        sa.UniqueConstraint("customer_id", name="uq_subscriptions_customer"),
    )
    op.create_index("ix_subscriptions_stripe_subscription", "subscriptions", ["stripe_subscription_id"])

    op.create_table(
        "instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="provisioning"),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("bot_token", sa.Text(), nullable=True),
        sa.Column("ai_email", sa.String(320), nullable=True),
        sa.Column("ai_role", sa.Text(), nullable=True),
        sa.Column("model_api_key", sa.Text(), nullable=True),
        sa.Column("config_json", json_type, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provisioning_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provision_attempt", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_instances_customer_id", "instances", ["customer_id"])
    op.create_index(
        "uq_instances_customer_live",
        "instances",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'deleted'"),
        sqlite_where=sa.text("status <> 'deleted'"),
    )

    op.create_table(
        "billing_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("stripe_charge_id", sa.String(255), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        *_timestamps(),
    )
    op.create_index("ix_billing_records_customer", "billing_records", ["customer_id"])
    op.create_index("ix_billing_records_invoice", "billing_records", ["stripe_invoice_id"])

    op.create_table(
        "leads",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("selected_tier", sa.String(16), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="lead"),
        sa.Column("stripe_session_id", sa.String(255), nullable=True),
        sa.Column("temp_customer_id", sa.Integer(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(100), nullable=False, server_default="onboarding"),
        sa.Column("migrated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "affiliates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("affiliate_code", sa.String(50), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("pending_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("paid_earnings", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("paypal_email", sa.String(320), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "referrals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("referred_customer_id", sa.Integer(), nullable=True),
        sa.Column("referred_email", sa.String(320), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("signed_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_referrals_affiliate_status", "referrals", ["affiliate_id", "status"])
    op.create_index("ix_referrals_referred_customer", "referrals", ["referred_customer_id"])

    op.create_table(
        "commissions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("referral_id", sa.Integer(), sa.ForeignKey("referrals.id"), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("billing_record_id", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # One commission per referral per billing record.
        sa.UniqueConstraint("referral_id", "billing_record_id", name="uq_commissions_referral_billing"),
    )
    op.create_index("ix_commissions_affiliate_id", "commissions", ["affiliate_id"])


def downgrade() -> None:
    op.drop_index("ix_commissions_affiliate_id", table_name="commissions")
    op.drop_table("commissions")
    op.drop_index("ix_referrals_referred_customer", table_name="referrals")
    op.drop_index("ix_referrals_affiliate_status", table_name="referrals")
    op.drop_table("referrals")
    op.drop_table("affiliates")
    op.drop_table("leads")
    op.drop_index("ix_billing_records_invoice", table_name="billing_records")
    op.drop_index("ix_billing_records_customer", table_name="billing_records")
    op.drop_table("billing_records")
    op.drop_index("uq_instances_customer_live", table_name="instances")
    op.drop_index("ix_instances_customer_id", table_name="instances")
    op.drop_table("instances")
    op.drop_index("ix_subscriptions_stripe_subscription", table_name="subscriptions")
    op.drop_table("subscriptions")
