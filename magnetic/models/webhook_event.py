from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel


class WebhookEvent(Document):
    """One row per provider event id; inserting it is what claims the event."""
    source: str
    event_id: str
    status: Literal["processing", "processed"] = "processing"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "webhook_events"
        indexes = [
            IndexModel([("source", ASCENDING), ("event_id", ASCENDING)], unique=True),
        ]
