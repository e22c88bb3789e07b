from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


class PaymentIntentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class CreditPackage(Base):
    __tablename__ = "credit_packages"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    credits = Column(Numeric(12, 2), nullable=False)
    bonus_credits = Column(Integer, nullable=False, server_default="0", default=0)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False, server_default="usd", default="usd")
    is_popular = Column(Boolean, nullable=False, server_default="false", default=False)
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    sort_order = Column(Integer, nullable=False, server_default="0", default=0)
    features = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def total_credits(self):
        return self.credits + self.bonus_credits


class PaymentIntent(Base):
    """
    Internal record of one gateway payment. `external_reference` holds a
    temporary `temp_` value until the gateway returns its own id.
    """

    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    credit_package_id = Column(
        Integer,
        ForeignKey("credit_packages.id", ondelete="SET NULL"),
        nullable=True,
    )
    external_reference = Column(String(255), unique=True, nullable=False)
    status = Column(String(20), nullable=False, server_default=PaymentIntentStatus.PENDING.value)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False, server_default="usd")
    credits_to_add = Column(Numeric(12, 2), nullable=False)
    gateway_metadata = Column(JSON, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    package = relationship("CreditPackage")

    __table_args__ = (
        Index("ix_payment_intents_user_status", "user_id", "status"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentIntentStatus.PENDING.value

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentIntentStatus.SUCCEEDED.value
