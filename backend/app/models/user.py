# app/models/user.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from app.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    is_admin = Column(Boolean, nullable=False, server_default="false", default=False)

    # Set the first time the user starts a Stripe purchase.
    stripe_customer_id = Column(String(255), unique=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    credit_balance = relationship(
        "CreditBalance",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    demo_credit = relationship(
        "DemoCredit",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
    )
    api_tokens = relationship(
        "UserApiToken",
        back_populates="user",
        cascade="all, delete-orphan",
    )
