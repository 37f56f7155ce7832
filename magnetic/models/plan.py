from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class Plan(Document):
    """Admin-managed plan configuration; engines read it, never write it."""
    slug: Indexed(str, unique=True)
    name: str = ""
    display_order: int = 0  # higher = more privileged
    initial_credits: int = 0
    monthly_credits: int = 0
    has_monthly_renewal: bool = False
    credits_expire_days: int | None = None
    can_buy_extra_credits: bool = False
    features: list[str] = Field(default_factory=list)
    external_product_id: str | None = None  # Hotmart product id
    crm_tag: str = ""  # comma-separated ActiveCampaign tag names or ids
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "plans"
        indexes = [
            [("external_product_id", 1)],
            [("is_active", 1), ("display_order", -1)],
        ]
