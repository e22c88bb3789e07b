"""Free evaluation allotment per user.

Revision ID: 20261018_02
Revises: 20261018_01
Create Date: 2026-10-18 14:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_02"
down_revision: Union[str, None] = "20261018_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "demo_credits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_limit", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("first_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_demo_credits_user_id"),
        sa.CheckConstraint("credits_used >= 0", name="ck_demo_credits_used_non_negative"),
        sa.CheckConstraint("credits_used <= credits_limit", name="ck_demo_credits_within_limit"),
    )
    op.create_index("ix_demo_credits_id", "demo_credits", ["id"])


def downgrade() -> None:
    op.drop_index("ix_demo_credits_id", table_name="demo_credits")
    op.drop_table("demo_credits")
