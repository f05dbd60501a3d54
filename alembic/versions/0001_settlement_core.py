from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_settlement_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "sellers",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=False),
        sa.Column("payout_account_id", sa.String(length=120), nullable=True),
        sa.Column("payout_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )

    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=253), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=80), nullable=True),
        sa.Column("seller_id", sa.String(), sa.ForeignKey("sellers.id"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_visible", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("verification_status", sa.String(length=20), nullable=False, server_default="unverified"),
        sa.Column("is_for_sale", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sale_status", sa.String(length=20), nullable=False, server_default="available"),
        sa.Column("buyer_id", sa.String(), nullable=True),
        sa.Column("checkout_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_listings_seller", "listings", ["seller_id"])
    op.create_index("ix_listings_sale_status", "listings", ["sale_status"])

    op.create_table(
        "sale_records",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("seller_id", sa.String(), sa.ForeignKey("sellers.id"), nullable=False),
        sa.Column("buyer_id", sa.String(), nullable=False),
        sa.Column("sale_price_minor", sa.Integer(), nullable=False),
        sa.Column("marketplace_fee_minor", sa.Integer(), nullable=False),
        sa.Column("seller_amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("checkout_session_id", sa.String(length=200), nullable=False, unique=True),
        sa.Column("payment_intent_id", sa.String(length=200), nullable=True),
        sa.Column("transfer_id", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("checkout_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_sale_records_listing", "sale_records", ["listing_id"])
    op.create_index("ix_sale_records_status_expires", "sale_records", ["status", "expires_at"])
    op.create_index("ix_sale_records_payment_intent", "sale_records", ["payment_intent_id"])

    op.create_table(
        "payout_records",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("seller_id", sa.String(), sa.ForeignKey("sellers.id"), nullable=False),
        sa.Column("sale_id", sa.String(), sa.ForeignKey("sale_records.id"), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("transfer_id", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="initiated"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("sale_id", name="uq_payout_sale"),
    )

    op.create_table(
        "customer_mappings",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(length=200), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_customer_mapping_active_user",
        "customer_mappings",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("entry_type", sa.String(length=40), nullable=False),
        sa.Column("sale_id", sa.String(), sa.ForeignKey("sale_records.id"), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("external_ref", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="completed"),
        *_timestamps(),
        sa.UniqueConstraint("entry_type", "sale_id", name="uq_ledger_entry_type_sale"),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(length=200), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="received"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("target_type", sa.String(length=120), nullable=True),
        sa.Column("target_id", sa.String(length=200), nullable=True),
        sa.Column(
            "detail",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_target", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("ledger_entries")
    op.drop_index("uq_customer_mapping_active_user", table_name="customer_mappings")
    op.drop_table("customer_mappings")
    op.drop_table("payout_records")
    op.drop_index("ix_sale_records_payment_intent", table_name="sale_records")
    op.drop_index("ix_sale_records_status_expires", table_name="sale_records")
    op.drop_index("ix_sale_records_listing", table_name="sale_records")
    op.drop_table("sale_records")
    op.drop_index("ix_listings_sale_status", table_name="listings")
    op.drop_index("ix_listings_seller", table_name="listings")
    op.drop_table("listings")
    op.drop_table("sellers")
