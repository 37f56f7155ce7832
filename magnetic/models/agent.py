from beanie import Document
from pydantic import Field


class Agent(Document):
    name: str
    credit_cost: int | None = Field(default=None, ge=0)
    message_package_size: int | None = Field(default=None, ge=1)
    is_active: bool = True

    class Settings:
        name = "agents"
