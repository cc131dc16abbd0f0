"""Engagement (job) domain models and role projections."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class EngagementStatus(str, Enum):
    """Engagement lifecycle status. The only source of truth for job state."""

    PENDING_QUOTE = "pending"
    QUOTED = "quoted"
    DECLINED = "declined"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EngagementStatus.COMPLETED, EngagementStatus.CANCELLED)


class Party(str, Enum):
    """Which side of the engagement is acting."""

    REQUESTER = "requester"
    PROVIDER = "provider"

    @property
    def counterparty(self) -> "Party":
        return Party.PROVIDER if self is Party.REQUESTER else Party.REQUESTER

    @property
    def confirmation_field(self) -> str:
        return f"{self.value}_confirmed"


class EngagementUpdate(BaseModel):
    """Partial write accepted by the engagement store. All fields optional."""

    status: EngagementStatus | None = None
    quote_amount: Decimal | None = None
    scheduled_date: date | None = None
    scheduled_time: str | None = None
    requester_confirmed: bool | None = None
    provider_confirmed: bool | None = None
    cancel_reason: str | None = None
    cancelled_by: Party | None = None


class Engagement(BaseModel):
    """Full engagement entity as stored."""

    id: UUID
    request_id: UUID
    requester_id: UUID
    provider_id: UUID
    status: EngagementStatus
    quote_amount: Decimal | None
    scheduled_date: date | None
    scheduled_time: str | None
    requester_confirmed: bool
    provider_confirmed: bool
    cancel_reason: str | None = None
    cancelled_by: Party | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def party_of(self, user_id: UUID) -> Party | None:
        """Role the given user plays on this engagement, if any."""
        if user_id == self.requester_id:
            return Party.REQUESTER
        if user_id == self.provider_id:
            return Party.PROVIDER
        return None

    def confirmed_by(self, party: Party) -> bool:
        return getattr(self, party.confirmation_field)

    def project_for(self, party: Party) -> "EngagementView":
        """Read-only view of this engagement as seen by one party."""
        counterparty = party.counterparty
        counterparty_id = self.provider_id if party is Party.REQUESTER else self.requester_id

        return EngagementView(
            id=self.id,
            request_id=self.request_id,
            viewer=party,
            counterparty_id=counterparty_id,
            status=self.status,
            quote_amount=self.quote_amount,
            quote_is_current=(
                self.quote_amount is not None
                and self.status != EngagementStatus.DECLINED
            ),
            scheduled_date=self.scheduled_date,
            scheduled_time=self.scheduled_time,
            viewer_confirmed=self.confirmed_by(party),
            counterparty_confirmed=self.confirmed_by(counterparty),
            awaiting_action=_awaiting_action(self, party),
            updated_at=self.updated_at,
        )


class EngagementView(BaseModel):
    """
    Role-specific projection computed at the API boundary.

    Never stored. Both parties see the same canonical record through it.
    """

    id: UUID
    request_id: UUID
    viewer: Party
    counterparty_id: UUID
    status: EngagementStatus
    quote_amount: Decimal | None
    quote_is_current: bool
    scheduled_date: date | None
    scheduled_time: str | None
    viewer_confirmed: bool
    counterparty_confirmed: bool
    awaiting_action: str | None
    updated_at: datetime


def _awaiting_action(engagement: Engagement, party: Party) -> str | None:
    status = engagement.status

    if party is Party.PROVIDER:
        if status in (EngagementStatus.PENDING_QUOTE, EngagementStatus.DECLINED):
            return "submit_quote"
    else:
        if status == EngagementStatus.QUOTED:
            return "respond_to_quote"

    if status == EngagementStatus.IN_PROGRESS and not engagement.confirmed_by(party):
        return "confirm_done"

    return None
