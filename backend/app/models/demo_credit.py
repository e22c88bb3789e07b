from __future__ import annotations

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.base import Base


class DemoCredit(Base):
    """
    Free evaluation allotment: a count of generations, not ledger credits.
    One row per user, created the first time the allotment is spent.
    """

    __tablename__ = "demo_credits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    credits_used = Column(Integer, nullable=False, server_default="0", default=0)
    credits_limit = Column(Integer, nullable=False, server_default="5", default=5)
    first_used_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="demo_credit")

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_demo_credits_used_non_negative"),
        CheckConstraint("credits_used <= credits_limit", name="ck_demo_credits_within_limit"),
    )

    @property
    def remaining(self) -> int:
        return max(0, int(self.credits_limit or 0) - int(self.credits_used or 0))

    @property
    def has_credits_remaining(self) -> bool:
        return self.remaining > 0
