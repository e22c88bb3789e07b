from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class GenerateTestsIn(BaseModel):
    plugin_code: str = Field(..., min_length=1)
    provider: str = Field(default="openai-gpt5", min_length=1, max_length=100)
    framework: Literal["phpunit", "pest"] = "phpunit"


class GenerateTestsOut(BaseModel):
    tests: str
    provider: str
    model: str
    framework: str
    tokens_used: int
    metered: bool
    funding: Literal["own_key", "demo", "credits"]
    credits_charged: Decimal
    balance_after: Decimal | None = None
    transaction_id: int | None = None
    demo_credits_remaining: int | None = None
