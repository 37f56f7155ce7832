from datetime import datetime

from beanie import Document
from pydantic import Field


class CreditPurchase(Document):
    user_id: str
    package: str
    credits: int
    price_brl: float = 0.0
    payment_status: str = "completed"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_purchases"
        indexes = [[("user_id", 1), ("created_at", -1)]]
