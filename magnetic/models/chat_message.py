from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field


class ChatMessage(Document):
    conversation_id: str
    user_id: str
    role: Literal["user", "assistant", "system"] = "user"
    content: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "chat_messages"
        indexes = [[("conversation_id", 1), ("user_id", 1), ("role", 1)]]
