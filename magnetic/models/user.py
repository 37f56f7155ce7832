from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class User(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    plan_id: PydanticObjectId | None = None
    plan_slug: str = "none"
    plan_activated_at: datetime | None = None
    last_crm_verification_at: datetime | None = None
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
        indexes = [[("plan_id", 1)]]
