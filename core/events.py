"""
Domain events for the marketplace lifecycle.

Immutable event objects published by the lifecycle engine after a mutation
has committed. Handlers (change notifier, push notifications) react without
the engine knowing who is listening.

Events carry the committed engagement and request so handlers can address
recipients without a re-read. Handlers that feed clients must still send
invalidation hints only; clients re-fetch the authoritative state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class MarketplaceEvent:
    """Base class for all marketplace domain events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)


# =============================================================================
# REQUEST EVENTS
# =============================================================================


@dataclass(frozen=True)
class RequestCreated(MarketplaceEvent):
    """A requester submitted a new request."""
    request: Any = None  # Request — using Any to avoid circular import

    @classmethod
    def create(cls, request: Any) -> "RequestCreated":
        return cls(request=request)


# =============================================================================
# ENGAGEMENT EVENTS
# =============================================================================


@dataclass(frozen=True)
class EngagementEvent(MarketplaceEvent):
    """Events related to engagement lifecycle."""
    engagement: Any = None  # Engagement
    request: Any = None  # Request, as it stands after the transition

    @classmethod
    def create(cls, engagement: Any, request: Any):
        return cls(engagement=engagement, request=request)


@dataclass(frozen=True)
class EngagementAccepted(EngagementEvent):
    """A provider claimed a request."""


@dataclass(frozen=True)
class QuoteSubmitted(EngagementEvent):
    """Provider sent (or re-sent) a quote."""


@dataclass(frozen=True)
class QuoteAccepted(EngagementEvent):
    """Requester accepted the quote; work is in progress."""


@dataclass(frozen=True)
class QuoteDeclined(EngagementEvent):
    """Requester declined the quote."""


@dataclass(frozen=True)
class CompletionConfirmed(EngagementEvent):
    """One party confirmed the work is done; the other has not yet."""
    party: Any = None  # Party

    @classmethod
    def create(cls, engagement: Any, request: Any, party: Any = None) -> "CompletionConfirmed":
        return cls(engagement=engagement, request=request, party=party)


@dataclass(frozen=True)
class EngagementCompleted(EngagementEvent):
    """Both parties confirmed; engagement and request are completed."""


@dataclass(frozen=True)
class EngagementCancelled(EngagementEvent):
    """Engagement was cancelled by one party."""


LIFECYCLE_EVENTS = (
    RequestCreated,
    EngagementAccepted,
    QuoteSubmitted,
    QuoteAccepted,
    QuoteDeclined,
    CompletionConfirmed,
    EngagementCompleted,
    EngagementCancelled,
)


# =============================================================================
# JOB CHAT EVENTS
# =============================================================================


@dataclass(frozen=True)
class JobMessageSent(EngagementEvent):
    """One party posted a message on the engagement."""
    message: Any = None  # JobMessage
    sender: Any = None  # Party

    @classmethod
    def create(cls, engagement: Any, message: Any, sender: Any) -> "JobMessageSent":
        return cls(engagement=engagement, message=message, sender=sender)


@dataclass(frozen=True)
class JobMessagesRead(EngagementEvent):
    """One party read the messages the other sent."""
    reader: Any = None  # Party
    count: int = 0

    @classmethod
    def create(cls, engagement: Any, reader: Any, count: int) -> "JobMessagesRead":
        return cls(engagement=engagement, reader=reader, count=count)


CHAT_EVENTS = (
    JobMessageSent,
    JobMessagesRead,
)
