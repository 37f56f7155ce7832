from datetime import datetime
from typing import Literal

from beanie import Document, Indexed
from pydantic import Field


class CreditSubscription(Document):
    """Monthly add-on credits; one row per user, independent of the base plan."""
    user_id: Indexed(str, unique=True)
    tier: str
    credits_per_month: int = Field(ge=0)
    price_brl: float = 0.0
    status: Literal["active", "cancelled"] = "active"
    next_renewal_at: datetime
    cancelled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_subscriptions"
        indexes = [[("status", 1), ("next_renewal_at", 1)]]
