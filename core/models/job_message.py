"""Messages exchanged between the two parties of an engagement."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

MAX_MESSAGE_LENGTH = 2000


class JobMessageCreate(BaseModel):
    content: str = Field(..., max_length=MAX_MESSAGE_LENGTH)

    @field_validator("content")
    @classmethod
    def not_blank(cls, content: str) -> str:
        content = content.strip()
        if not content:
            raise ValueError("Message cannot be blank")
        return content


class JobMessage(BaseModel):
    """
    One chat message on an engagement.

    read_at is set when the recipient (the party that did not send it)
    marks the conversation read.
    """

    id: UUID
    engagement_id: UUID
    sender_id: UUID
    content: str
    read_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def preview(self, limit: int = 100) -> str:
        """Content cut to `limit` characters for a notification body."""
        if len(self.content) <= limit:
            return self.content
        return self.content[:limit - 3] + "..."
