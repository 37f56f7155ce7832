from typing import Literal

from beanie import Document
from pydantic import Field


class CreditPackage(Document):
    """Extra credits sold on their own: one-time (bonus) or recurring (subscription)."""
    name: str
    package_type: Literal["one_time", "recurring"] = "one_time"
    credits_amount: int = Field(ge=0)
    price_brl: float = 0.0
    external_product_id: str | None = None
    is_active: bool = True

    class Settings:
        name = "credit_packages"
        indexes = [[("external_product_id", 1)]]
