"""
Lifecycle engine for requests and engagements.

Owns every legal state transition:

    pending      --(provider submits quote)--> quoted
    quoted       --(requester accepts)-------> in_progress   (accepted is collapsed)
    quoted       --(requester declines)------> declined
    declined     --(provider re-quotes)------> quoted
    in_progress  --(both confirm)------------> completed
    non-terminal --(either party cancels)----> cancelled

Each operation runs as one store transaction: the engagement row is locked,
validated, written, and the linked request's status is cascaded before the
commit. A failure anywhere inside leaves both records as they were. Domain
events are published only after the commit.
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from uuid import UUID

from core.errors import AlreadyEngaged, InvalidAmount, InvalidState, InvalidTimeSlot
from core.event_bus import EventBus
from core.events import (
    RequestCreated,
    EngagementAccepted,
    QuoteSubmitted,
    QuoteAccepted,
    QuoteDeclined,
    CompletionConfirmed,
    EngagementCompleted,
    EngagementCancelled,
)
from core.models import (
    Engagement, EngagementStatus, EngagementUpdate, EngagementView, Party,
    Request, RequestCreate, RequestStatus, FLEXIBLE_SLOT,
)
from core.stores.write_scope import engine_write_scope
from utils.timezone import today_utc

logger = logging.getLogger(__name__)

_QUOTABLE = (EngagementStatus.PENDING_QUOTE, EngagementStatus.DECLINED)
_CENTS = Decimal("0.01")
# engagements.quote_amount is NUMERIC(12, 2)
_MAX_QUOTE = Decimal("9999999999.99")


class LifecycleEngine:
    """
    The only writer of engagement state and request status.

    Args:
        requests: RequestStore or InMemoryRequestStore
        engagements: EngagementStore or InMemoryEngagementStore on the same backend
        event_bus: Receives domain events after each committed transition
    """

    def __init__(self, requests, engagements, event_bus: EventBus | None = None):
        self.requests = requests
        self.engagements = engagements
        self.event_bus = event_bus or EventBus()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def create_request(self, requester_id: UUID, data: RequestCreate) -> Request:
        """Create a request in NEW status and announce it to browsing providers."""
        request = self.requests.create(requester_id, data)
        logger.info(f"Request {request.id} created by {requester_id}")
        self.event_bus.publish(RequestCreated.create(request=request))
        return request

    def get_request(self, request_id: UUID) -> Request:
        return self.requests.get(request_id)

    # -------------------------------------------------------------------------
    # Engagement transitions
    # -------------------------------------------------------------------------

    def accept(self, request_id: UUID, provider_id: UUID) -> Engagement:
        """
        Provider claims a request.

        Exactly one claim wins. A loser, or the winner retrying, gets
        AlreadyEngaged; no duplicate engagement is ever created.

        Raises:
            NotFound: Unknown request
            InvalidState: Request is terminal, or provider is the requester
            AlreadyEngaged: Someone (possibly this provider) got there first
        """
        with self.engagements.transaction():
            request = self.requests.get(request_id, for_update=True)

            if request.is_terminal:
                raise InvalidState(
                    f"Request {request_id} is {request.status.value} and cannot be accepted",
                    current_status=request.status.value,
                )

            if request.requester_id == provider_id:
                raise InvalidState(
                    f"Requester cannot accept their own request {request_id}",
                    current_status=request.status.value,
                )

            existing = self.engagements.find_active(request_id, provider_id)
            if existing is not None:
                raise AlreadyEngaged(request_id, provider_id, existing.id, request.status.value)

            if request.status != RequestStatus.NEW:
                raise AlreadyEngaged(request_id, provider_id, current_status=request.status.value)

            engagement = self.engagements.create(request_id, request.requester_id, provider_id)

            with engine_write_scope():
                request = self.requests.set_status(
                    request_id, RequestStatus.ACCEPTED, expected=RequestStatus.NEW
                )

        logger.info(f"Provider {provider_id} accepted request {request_id} (engagement {engagement.id})")
        self.event_bus.publish(EngagementAccepted.create(engagement=engagement, request=request))
        return engagement

    def find_engagement(self, request_id: UUID, provider_id: UUID) -> Engagement | None:
        """
        Re-read whether a provider's earlier accept landed.

        Call this before retrying an accept that timed out.
        """
        return self.engagements.find_active(request_id, provider_id)

    def submit_quote(
        self,
        engagement_id: UUID,
        amount: Decimal | int | float | str,
        scheduled_time: str | None = None
    ) -> Engagement:
        """
        Provider quotes (or re-quotes after a decline).

        scheduled_date is taken from the request's preferred_date. When the
        requester gave no date it falls back to today's UTC date; this is the
        documented product behaviour, not an inference.

        Raises:
            InvalidAmount: amount is not a positive number
            InvalidState: engagement is not pending or declined
            InvalidTimeSlot: scheduled_time is not an offered slot
        """
        with self.engagements.transaction():
            engagement = self.engagements.get(engagement_id, for_update=True)
            if engagement.status not in _QUOTABLE:
                raise InvalidState(
                    f"Engagement {engagement_id} cannot be quoted - status is {engagement.status.value}",
                    current_status=engagement.status.value,
                )

            request = self.requests.get(engagement.request_id)
            try:
                quote = _parse_amount(amount)
                slot = _resolve_time_slot(request, scheduled_time)
            except (InvalidAmount, InvalidTimeSlot) as e:
                e.current_status = engagement.status.value
                raise

            scheduled_date = request.preferred_date
            if scheduled_date is None:
                scheduled_date = today_utc()
                logger.info(
                    f"Request {request.id} has no preferred date; scheduling quote for {scheduled_date}"
                )

            engagement = self.engagements.update(engagement_id, EngagementUpdate(
                status=EngagementStatus.QUOTED,
                quote_amount=quote,
                scheduled_date=scheduled_date,
                scheduled_time=slot,
            ))

        logger.info(f"Engagement {engagement_id} quoted at {quote}")
        self.event_bus.publish(QuoteSubmitted.create(engagement=engagement, request=request))
        return engagement

    def accept_quote(self, engagement_id: UUID) -> Engagement:
        """
        Requester accepts the quote.

        Accepting starts the work immediately: the engagement goes straight
        to IN_PROGRESS and ACCEPTED is never persisted as a waiting state.

        Raises:
            InvalidState: engagement is not quoted
        """
        with self.engagements.transaction():
            engagement = self._require_status(engagement_id, EngagementStatus.QUOTED, "accept quote on")
            engagement = self.engagements.update(
                engagement_id, EngagementUpdate(status=EngagementStatus.IN_PROGRESS)
            )
            request = self._cascade_request(engagement.request_id, RequestStatus.IN_PROGRESS)

        logger.info(f"Quote accepted on engagement {engagement_id}; work in progress")
        self.event_bus.publish(QuoteAccepted.create(engagement=engagement, request=request))
        return engagement

    def decline_quote(self, engagement_id: UUID) -> Engagement:
        """
        Requester declines the quote.

        quote_amount is kept for display as the previous quote; the next
        submit_quote overwrites it.

        Raises:
            InvalidState: engagement is not quoted
        """
        with self.engagements.transaction():
            engagement = self._require_status(engagement_id, EngagementStatus.QUOTED, "decline quote on")
            engagement = self.engagements.update(
                engagement_id, EngagementUpdate(status=EngagementStatus.DECLINED)
            )
            request = self.requests.get(engagement.request_id)

        logger.info(f"Quote declined on engagement {engagement_id}")
        self.event_bus.publish(QuoteDeclined.create(engagement=engagement, request=request))
        return engagement

    def confirm_done(self, engagement_id: UUID, actor: Party) -> Engagement:
        """
        One party confirms the work is done.

        Setting a flag that is already set is a no-op. The flag write, the
        re-read and the completion check share one transaction with the row
        locked, so two near-simultaneous confirmations cannot both miss each
        other.

        Raises:
            InvalidState: engagement is not in progress
        """
        actor = Party(actor)
        changed = False
        completed = False

        with self.engagements.transaction():
            engagement = self._require_status(
                engagement_id, EngagementStatus.IN_PROGRESS, "confirm completion of"
            )

            if not engagement.confirmed_by(actor):
                self.engagements.update(engagement_id, {actor.confirmation_field: True})
                changed = True

            engagement = self.engagements.get(engagement_id, for_update=True)
            request = self.requests.get(engagement.request_id)

            if engagement.requester_confirmed and engagement.provider_confirmed:
                engagement = self.engagements.update(
                    engagement_id, EngagementUpdate(status=EngagementStatus.COMPLETED)
                )
                request = self._cascade_request(engagement.request_id, RequestStatus.COMPLETED)
                completed = True

        if completed:
            logger.info(f"Engagement {engagement_id} completed (both parties confirmed)")
            self.event_bus.publish(EngagementCompleted.create(engagement=engagement, request=request))
        elif changed:
            logger.info(f"Engagement {engagement_id}: {actor.value} confirmed completion")
            self.event_bus.publish(
                CompletionConfirmed.create(engagement=engagement, request=request, party=actor)
            )

        return engagement

    def cancel(
        self,
        engagement_id: UUID,
        reason: str | None = None,
        actor: Party | None = None
    ) -> Engagement:
        """
        Either party withdraws from a non-terminal engagement.

        The request is cancelled too, unless another provider still holds a
        non-cancelled engagement on it.

        Raises:
            InvalidState: engagement is already completed or cancelled
        """
        with self.engagements.transaction():
            engagement = self.engagements.get(engagement_id, for_update=True)
            if engagement.is_terminal:
                raise InvalidState(
                    f"Engagement {engagement_id} cannot be cancelled - status is {engagement.status.value}",
                    current_status=engagement.status.value,
                )

            engagement = self.engagements.update(engagement_id, EngagementUpdate(
                status=EngagementStatus.CANCELLED,
                cancel_reason=reason,
                cancelled_by=Party(actor) if actor is not None else None,
            ))

            others_active = any(
                other.id != engagement_id and other.status != EngagementStatus.CANCELLED
                for other in self.engagements.list_by_request(engagement.request_id)
            )
            if others_active:
                request = self.requests.get(engagement.request_id)
            else:
                request = self._cascade_request(engagement.request_id, RequestStatus.CANCELLED)

        logger.info(f"Engagement {engagement_id} cancelled ({reason or 'no reason given'})")
        self.event_bus.publish(EngagementCancelled.create(engagement=engagement, request=request))
        return engagement

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_engagement(self, engagement_id: UUID) -> Engagement:
        return self.engagements.get(engagement_id)

    def list_open_requests(self, region: str | None = None, limit: int = 50) -> list[Request]:
        return self.requests.list_open(region=region, limit=limit)

    def list_requests_for(self, requester_id: UUID) -> list[Request]:
        return self.requests.list_by_requester(requester_id)

    def list_engagements_for_provider(self, provider_id: UUID) -> list[Engagement]:
        return self.engagements.list_by_provider(provider_id)

    def list_engagements_for_request(self, request_id: UUID) -> list[Engagement]:
        return self.engagements.list_by_request(request_id)

    def view_for(self, engagement_id: UUID, user_id: UUID) -> EngagementView:
        """
        Engagement as seen by one of its parties.

        Raises:
            PermissionError: user is neither requester nor provider
        """
        engagement = self.engagements.get(engagement_id)
        party = engagement.party_of(user_id)
        if party is None:
            raise PermissionError(f"User is not a party to engagement {engagement_id}")
        return engagement.project_for(party)

    # -------------------------------------------------------------------------
    # Private
    # -------------------------------------------------------------------------

    def _require_status(self, engagement_id: UUID, status: EngagementStatus, verb: str) -> Engagement:
        engagement = self.engagements.get(engagement_id, for_update=True)
        if engagement.status != status:
            raise InvalidState(
                f"Cannot {verb} engagement {engagement_id} - status is {engagement.status.value}",
                current_status=engagement.status.value,
            )
        return engagement

    def _cascade_request(self, request_id: UUID, target: RequestStatus) -> Request:
        """
        Move the request toward `target`, never backwards.

        Terminal requests are left as they are. CANCELLED is reachable from
        any non-terminal status; every other target must rank higher than
        the current status.
        """
        request = self.requests.get(request_id, for_update=True)
        if request.is_terminal:
            return request

        if target != RequestStatus.CANCELLED and target.rank <= request.status.rank:
            return request

        with engine_write_scope():
            return self.requests.set_status(request_id, target, expected=request.status)


def _parse_amount(amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmount("Quote amount must be a number")

    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Quote amount {amount!r} is not a number")

    if not value.is_finite():
        raise InvalidAmount("Quote amount must be finite")

    try:
        value = value.quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"Quote amount {amount!r} is out of range")
    if value <= 0:
        raise InvalidAmount("Quote amount must be greater than zero")
    if value > _MAX_QUOTE:
        raise InvalidAmount(f"Quote amount cannot exceed {_MAX_QUOTE}")

    return value


def _resolve_time_slot(request: Request, scheduled_time: str | None) -> str | None:
    """
    Validate a proposed time against the requester's slots.

    An offered slot matches case-insensitively and is stored with the
    requester's spelling. Free text is accepted only when the requester
    marked their availability as flexible.
    """
    if scheduled_time is None:
        return None

    proposal = scheduled_time.strip()
    if not proposal:
        raise InvalidTimeSlot("Proposed time cannot be blank")

    if proposal.lower() == FLEXIBLE_SLOT:
        raise InvalidTimeSlot("Propose a concrete timeframe instead of 'flexible'")

    for slot in request.preferred_time:
        if slot.lower() == proposal.lower():
            return slot

    if request.accepts_flexible_time:
        return proposal

    raise InvalidTimeSlot(
        f"'{proposal}' is not one of the requested slots: {', '.join(request.preferred_time) or 'none'}"
    )
