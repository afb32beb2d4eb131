"""initial receipt ledger schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identity_household",
        *_base_columns(),
        sa.Column("name", sa.String(length=200), nullable=False),
    )

    op.create_table(
        "identity_user",
        *_base_columns(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("display_currency", sa.String(length=3), nullable=True),
        sa.Column(
            "default_household_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_household.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)

    op.create_table(
        "receipts_receipt",
        *_base_columns(),
        sa.Column(
            "user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False
        ),
        sa.Column(
            "household_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_household.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("image_url", sa.String(length=2048), nullable=False),
        sa.Column("processing_status", sa.String(length=10), nullable=False),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("processing_tokens", sa.JSON(), nullable=True),
        sa.Column("merchant_name", sa.String(length=200), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("transaction_date", sa.Date(), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("payment_method", sa.String(length=100), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("receipt_number", sa.String(length=100), nullable=True),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=True),
        sa.Column("tax", sa.Numeric(12, 2), nullable=True),
        sa.Column("service_charge", sa.Numeric(12, 2), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("ocr_data", sa.JSON(), nullable=True),
        sa.Column("ocr_schema_version", sa.Integer(), nullable=True),
        sa.Column("is_business_expense", sa.Boolean(), nullable=False),
        sa.Column("business_category", sa.String(length=100), nullable=True),
        sa.Column("business_notes", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_receipts_receipt_user_id", "receipts_receipt", ["user_id"])
    op.create_index("ix_receipts_receipt_household_id", "receipts_receipt", ["household_id"])
    op.create_index(
        "ix_receipts_receipt_processing_status", "receipts_receipt", ["processing_status"]
    )
    op.create_index(
        "ix_receipts_receipt_transaction_date", "receipts_receipt", ["transaction_date"]
    )

    op.create_table(
        "receipts_receipt_item",
        *_base_columns(),
        sa.Column(
            "receipt_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("receipts_receipt.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=300), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 4), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("modifiers", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_receipts_receipt_item_receipt_id", "receipts_receipt_item", ["receipt_id"]
    )

    op.create_table(
        "subscriptions_subscription",
        *_base_columns(),
        sa.Column(
            "user_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False
        ),
        sa.Column(
            "household_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_household.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=50), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_frequency", sa.String(length=9), nullable=False),
        sa.Column("billing_day", sa.Integer(), nullable=False),
        sa.Column("custom_frequency_days", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=9), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("next_billing_date", sa.Date(), nullable=True),
        sa.Column("last_payment_date", sa.Date(), nullable=True),
        sa.Column("is_business_expense", sa.Boolean(), nullable=False),
        sa.Column("website", sa.String(length=2048), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("billing_day BETWEEN 1 AND 31", name="ck_subscription_billing_day"),
    )
    op.create_index(
        "ix_subscriptions_subscription_user_id", "subscriptions_subscription", ["user_id"]
    )
    op.create_index(
        "ix_subscriptions_subscription_household_id",
        "subscriptions_subscription",
        ["household_id"],
    )
    op.create_index(
        "ix_subscriptions_subscription_status", "subscriptions_subscription", ["status"]
    )
    op.create_index(
        "ix_subscriptions_subscription_next_billing_date",
        "subscriptions_subscription",
        ["next_billing_date"],
    )

    op.create_table(
        "subscriptions_payment",
        *_base_columns(),
        sa.Column(
            "subscription_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("subscriptions_subscription.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("expected_date", sa.Date(), nullable=False),
        sa.Column("expected_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=9), nullable=False),
        sa.Column(
            "receipt_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("receipts_receipt.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("actual_date", sa.Date(), nullable=True),
        sa.Column("actual_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("receipt_id", name="uq_subscriptions_payment_receipt_id"),
    )
    op.create_index(
        "ix_subscriptions_payment_subscription_id", "subscriptions_payment", ["subscription_id"]
    )
    op.create_index(
        "ix_subscriptions_payment_expected_date", "subscriptions_payment", ["expected_date"]
    )
    op.create_index("ix_subscriptions_payment_status", "subscriptions_payment", ["status"])

    op.create_table(
        "insights_cache",
        *_base_columns(),
        sa.Column(
            "user_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_user.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "household_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("identity_household.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("scope", sa.String(length=20), nullable=False),
        sa.Column("cache_type", sa.String(length=50), nullable=False),
        sa.Column("cache_key", sa.String(length=200), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "user_id", "scope", "cache_type", "cache_key", name="uq_insights_cache_entry"
        ),
    )
    op.create_index("ix_insights_cache_user_id", "insights_cache", ["user_id"])
    op.create_index("ix_insights_cache_household_id", "insights_cache", ["household_id"])
    op.create_index("ix_insights_cache_expires_at", "insights_cache", ["expires_at"])


def downgrade() -> None:
    op.drop_table("insights_cache")
    op.drop_table("subscriptions_payment")
    op.drop_table("subscriptions_subscription")
    op.drop_table("receipts_receipt_item")
    op.drop_table("receipts_receipt")
    op.drop_table("identity_user")
    op.drop_table("identity_household")
