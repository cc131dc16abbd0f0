"""
Job chat: messages between the requester and the provider of an engagement.

Only the two parties may post or read. Sending is refused once the engagement
has been cancelled; a completed job stays open for follow-up questions.
Events are published after the message is stored so the change notifier and
the push handler can tell the other side.
"""

import logging
from uuid import UUID

from core.errors import InvalidState
from core.event_bus import EventBus
from core.events import JobMessageSent, JobMessagesRead
from core.models import Engagement, EngagementStatus, JobMessage, JobMessageCreate, Party
from core.services.lifecycle_engine import LifecycleEngine

logger = logging.getLogger(__name__)


class JobChatService:
    """
    Args:
        messages: JobMessageStore or InMemoryJobMessageStore
        engine: LifecycleEngine, for engagement lookups
        event_bus: Receives JobMessageSent / JobMessagesRead
    """

    def __init__(self, messages, engine: LifecycleEngine, event_bus: EventBus | None = None):
        self.messages = messages
        self.engine = engine
        self.event_bus = event_bus or engine.event_bus

    def send_message(self, engagement_id: UUID, sender_id: UUID, content: str) -> JobMessage:
        """
        Post a message as one party of the engagement.

        Raises:
            NotFound: Unknown engagement
            PermissionError: Sender is not a party
            InvalidState: Engagement is cancelled
            pydantic.ValidationError: Blank or over-long content
        """
        data = JobMessageCreate(content=content)
        engagement, party = self._require_party(engagement_id, sender_id)

        if engagement.status == EngagementStatus.CANCELLED:
            raise InvalidState(
                f"Engagement {engagement_id} is cancelled; no further messages",
                current_status=engagement.status.value,
            )

        message = self.messages.create(engagement_id, sender_id, data.content)

        logger.info(f"Message {message.id} on engagement {engagement_id} from {party.value}")
        self.event_bus.publish(JobMessageSent.create(engagement=engagement, message=message, sender=party))
        return message

    def list_messages(self, engagement_id: UUID, user_id: UUID, limit: int = 200) -> list[JobMessage]:
        """Messages on the engagement, oldest first. Parties only."""
        self._require_party(engagement_id, user_id)
        return self.messages.list_by_engagement(engagement_id, limit=limit)

    def mark_read(self, engagement_id: UUID, reader_id: UUID) -> int:
        """
        Mark everything the other party sent as read.

        Returns:
            Number of messages newly marked; 0 publishes nothing
        """
        engagement, party = self._require_party(engagement_id, reader_id)
        count = self.messages.mark_read(engagement_id, reader_id)
        if count:
            self.event_bus.publish(JobMessagesRead.create(engagement=engagement, reader=party, count=count))
        return count

    def unread_counts(self, user_id: UUID) -> dict[UUID, int]:
        """Unread messages addressed to the user, keyed by engagement id."""
        return self.messages.unread_counts(user_id)

    def _require_party(self, engagement_id: UUID, user_id: UUID) -> tuple[Engagement, Party]:
        engagement = self.engine.get_engagement(engagement_id)
        party = engagement.party_of(user_id)
        if party is None:
            raise PermissionError(f"Not a party to engagement {engagement_id}")
        return engagement, party
