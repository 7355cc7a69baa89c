from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AnomalyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    anomaly_id: str
    kind: str
    reservation_id: str | None = None
    order_id: str | None = None
    stripe_event_id: str | None = None
    checkout_session_id: str | None = None
    payment_intent_id: str | None = None
    amount_cents: int | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
    resolution_note: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None

    @field_validator("detail", mode="before")
    @classmethod
    def parse_detail(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return value or {}


class AnomalyResolveRequest(BaseModel):
    note: str = Field(min_length=1, max_length=2000)
