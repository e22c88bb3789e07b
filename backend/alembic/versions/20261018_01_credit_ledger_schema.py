"""Users, credit ledger, packages, payment intents and private API keys.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("stripe_customer_id", name="uq_users_stripe_customer_id"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "credits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_purchased", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_used", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_usage_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", name="uq_credits_user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_credits_balance_non_negative"),
    )
    op.create_index("ix_credits_id", "credits", ["id"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_before", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("payment_status", sa.String(length=50), nullable=True),
        sa.Column("ai_provider", sa.String(length=100), nullable=True),
        sa.Column("ai_model", sa.String(length=100), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_credit_transactions_id", "credit_transactions", ["id"])
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"])
    op.create_index("ix_credit_transactions_payment_intent_id", "credit_transactions", ["payment_intent_id"])
    op.create_index("ix_credit_transactions_user_type", "credit_transactions", ["user_id", "type"])
    op.create_index("ix_credit_transactions_user_created", "credit_transactions", ["user_id", "created_at"])
    op.create_index("ix_credit_transactions_provider_created", "credit_transactions", ["ai_provider", "created_at"])

    packages = op.create_table(
        "credit_packages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("credits", sa.Numeric(12, 2), nullable=False),
        sa.Column("bonus_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="usd"),
        sa.Column("is_popular", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("slug", name="uq_credit_packages_slug"),
    )
    op.create_index("ix_credit_packages_id", "credit_packages", ["id"])

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("credit_package_id", sa.Integer(), nullable=True),
        sa.Column("external_reference", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="usd"),
        sa.Column("credits_to_add", sa.Numeric(12, 2), nullable=False),
        sa.Column("gateway_metadata", sa.JSON(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["credit_package_id"], ["credit_packages.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("external_reference", name="uq_payment_intents_external_reference"),
        sa.CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'canceled')",
            name="ck_payment_intents_status",
        ),
    )
    op.create_index("ix_payment_intents_id", "payment_intents", ["id"])
    op.create_index("ix_payment_intents_user_id", "payment_intents", ["user_id"])
    op.create_index("ix_payment_intents_user_status", "payment_intents", ["user_id", "status"])

    op.create_table(
        "user_api_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "provider", name="uq_user_api_tokens_user_provider"),
    )
    op.create_index("ix_user_api_tokens_id", "user_api_tokens", ["id"])
    op.create_index("ix_user_api_tokens_user_id", "user_api_tokens", ["user_id"])

    op.bulk_insert(
        packages,
        [
            {"slug": "starter", "name": "Starter Pack", "description": "Perfect for trying out AI test generation",
             "credits": 25, "bonus_credits": 0, "price": 9.99, "currency": "usd", "is_popular": False,
             "is_active": True, "sort_order": 1},
            {"slug": "developer", "name": "Developer Pack", "description": "For individual plugin developers shipping regularly",
             "credits": 50, "bonus_credits": 5, "price": 19.99, "currency": "usd", "is_popular": False,
             "is_active": True, "sort_order": 2},
            {"slug": "professional", "name": "Professional Pack", "description": "Best value for active plugin teams",
             "credits": 100, "bonus_credits": 10, "price": 29.99, "currency": "usd", "is_popular": True,
             "is_active": True, "sort_order": 3},
            {"slug": "enterprise", "name": "Enterprise Pack", "description": "For agencies testing many plugins",
             "credits": 500, "bonus_credits": 100, "price": 99.99, "currency": "usd", "is_popular": False,
             "is_active": True, "sort_order": 4},
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_user_api_tokens_user_id", table_name="user_api_tokens")
    op.drop_index("ix_user_api_tokens_id", table_name="user_api_tokens")
    op.drop_table("user_api_tokens")

    op.drop_index("ix_payment_intents_user_status", table_name="payment_intents")
    op.drop_index("ix_payment_intents_user_id", table_name="payment_intents")
    op.drop_index("ix_payment_intents_id", table_name="payment_intents")
    op.drop_table("payment_intents")

    op.drop_index("ix_credit_packages_id", table_name="credit_packages")
    op.drop_table("credit_packages")

    op.drop_index("ix_credit_transactions_provider_created", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_created", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_type", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_payment_intent_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_credits_id", table_name="credits")
    op.drop_table("credits")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
