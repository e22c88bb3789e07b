from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CreditBalanceOut(BaseModel):
    balance: Decimal
    formatted_balance: str


class CreditTransactionOut(BaseModel):
    id: int
    type: str
    type_label: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    ai_provider: str | None = None
    ai_model: str | None = None
    tokens_used: int | None = None
    payment_intent_id: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProviderUsageOut(BaseModel):
    uses: int
    credits: Decimal


class CreditStatusOut(BaseModel):
    balance: Decimal
    total_purchased: Decimal
    total_used: Decimal
    total_uses: int
    recent_transactions: list[CreditTransactionOut]
    usage_breakdown: dict[str, ProviderUsageOut]


class CreditPackageOut(BaseModel):
    id: int
    slug: str
    name: str
    description: str | None = None
    credits: Decimal
    bonus_credits: int
    total_credits: Decimal
    price: Decimal
    currency: str
    is_popular: bool
    features: list[str] | None = None

    model_config = ConfigDict(from_attributes=True)


class CreditPackagesOut(BaseModel):
    packages: list[CreditPackageOut]
    recommended_slug: str | None = None


class ProviderCostOut(BaseModel):
    provider_id: str
    display_name: str
    family: str
    model: str
    cost: Decimal
    formatted_cost: str

    model_config = ConfigDict(from_attributes=True)


class PurchaseCreate(BaseModel):
    package_id: int | str

    @field_validator("package_id")
    @classmethod
    def _validate_package_id(cls, value: int | str) -> int | str:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if not normalized:
                raise ValueError("package_id is required")
            return normalized
        if value <= 0:
            raise ValueError("package_id must be positive")
        return value


class PurchaseOut(BaseModel):
    payment_intent_id: int
    external_reference: str
    client_secret: str
    publishable_key: str | None = None
    amount: Decimal
    currency: str
    credits: Decimal
    package: CreditPackageOut


class PaymentStatusOut(BaseModel):
    external_reference: str
    status: str
    gateway_status: str | None = None
    amount: Decimal
    currency: str
    credits_to_add: Decimal
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None


class ReceiptOut(BaseModel):
    transaction: CreditTransactionOut
    package: CreditPackageOut | None = None
    external_reference: str
    amount: Decimal
    currency: str
    paid_at: datetime | None = None
    receipt_url: str | None = None


class DemoCreditStatusOut(BaseModel):
    has_credits: bool
    remaining: int
    total: int
    used: int


class WebhookAckOut(BaseModel):
    received: bool = True
    credits_applied: bool = False
    outcome: str | None = None


class AdminAdjustIn(BaseModel):
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("amount must be non-zero")
        return value


class AdminBonusIn(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: str = Field(default="Bonus credits", min_length=1, max_length=255)


class RefundIn(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    reason: Literal["duplicate", "fraudulent", "requested_by_customer"] | None = None


class RefundOut(BaseModel):
    refund_id: str | None
    status: str | None
    amount_minor: int | None = None
