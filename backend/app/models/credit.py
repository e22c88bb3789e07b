from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


TRANSACTION_TYPE_LABELS = {
    TransactionType.PURCHASE: "Credit Purchase",
    TransactionType.USAGE: "AI Usage",
    TransactionType.REFUND: "Refund",
    TransactionType.BONUS: "Bonus Credits",
    TransactionType.ADJUSTMENT: "Balance Adjustment",
}


class CreditBalance(Base):
    """
    One row per user. Only CreditsService writes here; every write bumps
    `version`, so a writer holding a stale copy fails instead of overwriting.
    """

    __tablename__ = "credits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    balance = Column(Numeric(12, 2), nullable=False, server_default="0", default=0)
    total_purchased = Column(Numeric(12, 2), nullable=False, server_default="0", default=0)
    total_used = Column(Numeric(12, 2), nullable=False, server_default="0", default=0)
    last_purchase_at = Column(DateTime(timezone=True), nullable=True)
    last_usage_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="credit_balance")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credits_balance_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}


class CreditTransaction(Base):
    """Append-only ledger entry. Corrections are new rows, never edits."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    description = Column(String(255), nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)

    # Payment linkage
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_method = Column(String(50), nullable=True)
    payment_status = Column(String(50), nullable=True)

    # AI usage
    ai_provider = Column(String(100), nullable=True)
    ai_model = Column(String(100), nullable=True)
    tokens_used = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("ix_credit_transactions_user_type", "user_id", "type"),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        Index("ix_credit_transactions_provider_created", "ai_provider", "created_at"),
    )

    @property
    def type_label(self) -> str:
        try:
            return TRANSACTION_TYPE_LABELS[TransactionType(self.type)]
        except ValueError:
            return str(self.type).capitalize()
