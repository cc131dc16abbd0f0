"""Service request (enquiry) domain models."""

from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

FLEXIBLE_SLOT = "flexible"


class RequestStatus(str, Enum):
    """Request lifecycle status, derived from the linked engagement."""

    NEW = "new"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)

    @property
    def rank(self) -> int:
        """Position on the forward path. Cancelled sits outside it."""
        return _REQUEST_RANK[self]


_REQUEST_RANK = {
    RequestStatus.NEW: 0,
    RequestStatus.ACCEPTED: 1,
    RequestStatus.IN_PROGRESS: 2,
    RequestStatus.COMPLETED: 3,
    RequestStatus.CANCELLED: 3,
}


class RequestCreate(BaseModel):
    """Fields a requester supplies. Status is not one of them."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    region: str | None = None
    preferred_date: date | None = None
    preferred_time: list[str] = Field(default_factory=list)
    attached_image_refs: list[str] = Field(default_factory=list)
    advisory_transcript: list[dict[str, Any]] | None = None

    @field_validator("preferred_time")
    @classmethod
    def strip_slots(cls, slots: list[str]) -> list[str]:
        cleaned = [s.strip() for s in slots if s and s.strip()]
        return list(dict.fromkeys(cleaned))


class Request(BaseModel):
    """Full request entity as stored."""

    id: UUID
    requester_id: UUID
    title: str
    description: str
    region: str | None
    preferred_date: date | None
    preferred_time: list[str]
    attached_image_refs: list[str]
    advisory_transcript: list[dict[str, Any]] | None
    status: RequestStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def accepts_flexible_time(self) -> bool:
        """Whether the requester's slot set carries the flexible marker."""
        return any(slot.lower() == FLEXIBLE_SLOT for slot in self.preferred_time)
