"""
Typed errors for marketplace lifecycle operations.

Every rejected mutation carries enough state for a client to resync its local
view (the current status, and for AlreadyEngaged the engagement this
provider already holds). Clients must still be ready to re-fetch.
"""

from uuid import UUID


class MarketplaceError(Exception):
    """Base class for marketplace domain errors."""


class NotFound(MarketplaceError):
    """Unknown request or engagement id."""

    def __init__(self, entity: str, entity_id: UUID | str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class InvalidState(MarketplaceError):
    """Transition not legal from the current status."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class InvalidTransition(MarketplaceError):
    """Status change attempted from outside the lifecycle engine."""


class AlreadyEngaged(MarketplaceError):
    """
    Accept-once violation.

    Success-adjacent: someone (possibly this same provider on an earlier
    attempt) got there first. current_status is the request's status.
    """

    def __init__(
        self,
        request_id: UUID,
        provider_id: UUID,
        engagement_id: UUID | None = None,
        current_status: str | None = None,
    ):
        self.request_id = request_id
        self.provider_id = provider_id
        self.engagement_id = engagement_id
        self.current_status = current_status
        super().__init__(f"Request {request_id} has already been accepted")


class InvalidAmount(MarketplaceError):
    """Quote amount is not a positive number within the storable range."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class InvalidTimeSlot(MarketplaceError):
    """Proposed time is not one of the requester's slots."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class TransientStoreFailure(MarketplaceError):
    """
    Storage or network outage.

    Retryable by the caller with backoff. Never swallowed.
    """
