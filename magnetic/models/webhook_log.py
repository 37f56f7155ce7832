from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field

WebhookStatus = Literal["received", "rejected", "processed", "error", "duplicate"]


class WebhookLog(Document):
    """Every payment-provider delivery, kept for audit and replay."""
    source: str
    event_type: str | None = None
    event_id: str | None = None
    payload: Any = None
    status: WebhookStatus
    error_message: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "webhook_logs"
        indexes = [
            [("source", 1), ("event_id", 1), ("status", 1)],
            [("created_at", -1)],
        ]
