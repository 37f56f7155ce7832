from datetime import datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field


class CreditBalance(Document):
    """Per-user credit buckets.

    Writes go through `services.balances.apply_change`, which compares `version`
    and pushes the matching ledger entries into `pending_ledger` in the same
    single-document update.
    """
    user_id: Indexed(str, unique=True)
    plan_credits: int = Field(default=0, ge=0)
    subscription_credits: int = Field(default=0, ge=0)
    bonus_credits: int = Field(default=0, ge=0)
    plan_credits_expire_at: datetime | None = None
    cycle_start_date: datetime | None = None
    cycle_end_date: datetime | None = None
    version: int = 0
    pending_ledger: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total(self) -> int:
        return self.plan_credits + self.subscription_credits + self.bonus_credits

    class Settings:
        name = "credit_balances"
        indexes = [
            [("cycle_end_date", 1)],
            [("plan_credits_expire_at", 1)],
        ]
