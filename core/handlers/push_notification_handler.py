"""
Handler for lifecycle and job chat events: push a notification to the other party.

Delivery is fire-and-forget: with an executor each send runs off the
publishing thread. A failed push is logged and dropped; it never
reaches the engine operation that published the event.
"""

import logging
from concurrent.futures import Executor
from typing import Callable
from uuid import UUID

from clients.push_client import PushDeliveryError
from core.errors import TransientStoreFailure
from core.events import (
    EngagementAccepted,
    QuoteSubmitted,
    QuoteAccepted,
    QuoteDeclined,
    CompletionConfirmed,
    EngagementCompleted,
    EngagementCancelled,
    EngagementEvent,
    JobMessageSent,
)
from core.models import Party

logger = logging.getLogger(__name__)

CURRENCY_SYMBOL = "£"

PUSHED_EVENTS = (
    EngagementAccepted,
    QuoteSubmitted,
    QuoteAccepted,
    QuoteDeclined,
    CompletionConfirmed,
    EngagementCompleted,
    EngagementCancelled,
    JobMessageSent,
)


def handle_lifecycle_push(sink, executor: Executor | None = None) -> Callable:
    """
    Factory that returns a handler for every engagement event.

    Args:
        sink: Notification sink with send(recipient_id, title, body, data)
        executor: Runs each send off the publishing thread; None sends inline

    Returns:
        Handler callable
    """

    def handler(event: EngagementEvent):
        engagement = event.engagement
        data = {
            "type": event.__class__.__name__,
            "engagementId": str(engagement.id),
            "requestId": str(engagement.request_id),
        }

        for recipient, title, body in notifications_for(event):
            if executor is None:
                deliver(sink, recipient, title, body, data, event.event_id)
            else:
                executor.submit(deliver, sink, recipient, title, body, data, event.event_id)

    return handler


def deliver(sink, recipient: UUID, title: str, body: str, data: dict, event_id) -> None:
    """Send one push; a failure is logged and dropped."""
    try:
        sink.send(recipient, title, body, data)
    except (PushDeliveryError, TransientStoreFailure) as e:
        logger.warning(f"Push for {data['type']} to {recipient} failed (event_id={event_id}): {e}")
    except Exception:
        # Nothing above an executor thread would report it
        logger.exception(f"Push for {data['type']} to {recipient} crashed (event_id={event_id})")


def notifications_for(event: EngagementEvent) -> list[tuple]:
    """(recipient_id, title, body) for each party that should hear about the event."""
    engagement = event.engagement
    title = event.request.title if event.request is not None else "your job"
    requester = engagement.requester_id
    provider = engagement.provider_id

    if isinstance(event, JobMessageSent):
        recipient = provider if event.sender == Party.REQUESTER else requester
        return [(recipient, "New message", event.message.preview())]

    if isinstance(event, EngagementAccepted):
        return [(requester, "Request accepted", f"A plumber accepted \"{title}\". A quote is on its way.")]

    if isinstance(event, QuoteSubmitted):
        amount = f"{CURRENCY_SYMBOL}{engagement.quote_amount:.2f}"
        return [(requester, "New quote", f"You have a quote of {amount} for \"{title}\".")]

    if isinstance(event, QuoteAccepted):
        return [(provider, "Quote accepted", f"Your quote for \"{title}\" was accepted. Work can start.")]

    if isinstance(event, QuoteDeclined):
        return [(provider, "Quote declined", f"Your quote for \"{title}\" was declined. You can send a new one.")]

    if isinstance(event, CompletionConfirmed):
        other = provider if event.party == Party.REQUESTER else requester
        return [(other, "Confirm job completion", f"\"{title}\" was marked as done. Please confirm.")]

    if isinstance(event, EngagementCompleted):
        body = f"\"{title}\" is complete. Thanks for using Plumberly."
        return [(requester, "Job completed", body), (provider, "Job completed", body)]

    if isinstance(event, EngagementCancelled):
        body = f"The job for \"{title}\" was cancelled."
        if engagement.cancelled_by == Party.REQUESTER:
            return [(provider, "Job cancelled", body)]
        if engagement.cancelled_by == Party.PROVIDER:
            return [(requester, "Job cancelled", body)]
        return [(requester, "Job cancelled", body), (provider, "Job cancelled", body)]

    return []
