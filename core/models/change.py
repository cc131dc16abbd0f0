"""Change signals delivered to client sessions."""

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from utils.timezone import now_utc


class ChangeSignal(BaseModel):
    """
    Invalidation hint: "something about this entity changed, re-fetch".

    Carries no field values. Delivery is at-least-once and unordered, so a
    session may see the same signal_id twice or see signals after it has
    already re-read the newer state.
    """

    signal_id: UUID = Field(default_factory=uuid4)
    topic: str
    entity: str
    entity_id: UUID
    reason: str
    emitted_at: datetime = Field(default_factory=now_utc)


def request_topic(request_id: UUID) -> str:
    return f"request:{request_id}"


def engagement_topic(engagement_id: UUID) -> str:
    return f"engagement:{engagement_id}"


def requester_topic(user_id: UUID) -> str:
    return f"requester:{user_id}"


def provider_topic(user_id: UUID) -> str:
    return f"provider:{user_id}"


OPEN_REQUESTS_TOPIC = "requests:open"
