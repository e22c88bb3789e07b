from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ApiTokenIn(BaseModel):
    token: str = Field(..., min_length=1, max_length=500)
    display_name: str | None = Field(default=None, max_length=100)


class ApiTokenOut(BaseModel):
    provider: str
    display_name: str | None = None
    is_active: bool
    last_used_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
