from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field

TransactionType = Literal[
    "consumption",
    "plan_renewal",
    "subscription_renewal",
    "bonus_purchase",
    "admin_adjustment",
]


class CreditTransaction(Document):
    """Append-only ledger row; never updated or deleted."""
    user_id: str
    type: TransactionType
    amount: int  # negative = debit, positive = grant
    source: str  # script_generation, chat_messages, trial_expired, package_<id>, ...
    balance_after: int
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("user_id", 1), ("type", 1)],
        ]
