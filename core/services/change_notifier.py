"""
Change notifier: invalidation fan-out to client sessions.

Every committed lifecycle transition becomes a set of ChangeSignals, one per
interested topic (the request, the engagement, the requester, the provider,
and the open-requests feed when a request enters or leaves it). Job chat
messages and read receipts signal the engagement and the party whose unread
count changed. Signals say only "re-fetch this"; they never carry values,
so out-of-order or duplicate delivery cannot make a client's view drift.

Each client session owns its own inbox. Two sessions of the same user never
share one, so a session that drains its inbox does not steal signals from
another device.

Two brokers implement the inbox mechanics:
- InMemoryChangeBroker: per-session queue.Queue, single process
- ValkeyChangeBroker: per-session Valkey list, shared across processes
"""

import logging
import queue
import threading
from uuid import UUID, uuid4

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clients.valkey_client import ValkeyClient, valkey_errors
from core.errors import NotFound, TransientStoreFailure
from core.event_bus import EventBus
from core.events import (
    CHAT_EVENTS,
    LIFECYCLE_EVENTS,
    MarketplaceEvent,
    JobMessageSent,
    JobMessagesRead,
    RequestCreated,
    EngagementEvent,
    EngagementAccepted,
    EngagementCancelled,
)
from core.models import ChangeSignal, Party
from core.models.change import (
    OPEN_REQUESTS_TOPIC,
    engagement_topic,
    provider_topic,
    request_topic,
    requester_topic,
)

logger = logging.getLogger(__name__)


# =============================================================================
# BROKERS
# =============================================================================


class InMemoryChangeBroker:
    """Session inboxes held in this process."""

    def __init__(self):
        self._lock = threading.RLock()
        self._inboxes: dict[str, queue.Queue] = {}
        self._session_topics: dict[str, set[str]] = {}
        self._session_users: dict[str, UUID] = {}
        self._topic_sessions: dict[str, set[str]] = {}

    def open_session(self, user_id: UUID, topics: list[str]) -> str:
        session_id = str(uuid4())
        with self._lock:
            self._inboxes[session_id] = queue.Queue()
            self._session_topics[session_id] = set()
            self._session_users[session_id] = user_id
        self.watch(session_id, topics)
        return session_id

    def watch(self, session_id: str, topics: list[str]) -> None:
        with self._lock:
            self._require_session(session_id)
            for topic in topics:
                self._session_topics[session_id].add(topic)
                self._topic_sessions.setdefault(topic, set()).add(session_id)

    def publish(self, signal: ChangeSignal) -> int:
        with self._lock:
            sessions = list(self._topic_sessions.get(signal.topic, ()))
            for session_id in sessions:
                self._inboxes[session_id].put(signal)
        return len(sessions)

    def poll(self, session_id: str, timeout: float = 0.0, max_signals: int = 100) -> list[ChangeSignal]:
        with self._lock:
            self._require_session(session_id)
            inbox = self._inboxes[session_id]

        signals = []
        try:
            if timeout > 0:
                signals.append(inbox.get(timeout=timeout))
            else:
                signals.append(inbox.get_nowait())
            while len(signals) < max_signals:
                signals.append(inbox.get_nowait())
        except queue.Empty:
            pass
        return signals

    def close_session(self, session_id: str) -> None:
        with self._lock:
            topics = self._session_topics.pop(session_id, set())
            for topic in topics:
                members = self._topic_sessions.get(topic)
                if members is not None:
                    members.discard(session_id)
                    if not members:
                        del self._topic_sessions[topic]
            self._inboxes.pop(session_id, None)
            self._session_users.pop(session_id, None)

    def session_user(self, session_id: str) -> UUID:
        with self._lock:
            self._require_session(session_id)
            return self._session_users[session_id]

    def _require_session(self, session_id: str) -> None:
        if session_id not in self._inboxes:
            raise NotFound("session", session_id)


class ValkeyChangeBroker:
    """
    Session inboxes held in Valkey.

    Keys:
        changes:topic:<topic>        set of session ids watching the topic
        changes:session:<id>:user    owner of the session (liveness marker, TTL)
        changes:session:<id>:topics  set of topics the session watches
        changes:session:<id>:inbox   list of pending signals (JSON)

    Signals stay in the inbox until the session pops them, so a session that
    reconnects within the TTL still receives them.
    """

    def __init__(self, valkey: ValkeyClient, session_ttl_seconds: int = 3600):
        self.valkey = valkey
        self.session_ttl_seconds = session_ttl_seconds

    def open_session(self, user_id: UUID, topics: list[str]) -> str:
        session_id = str(uuid4())
        with valkey_errors():
            self.valkey.set(self._user_key(session_id), str(user_id), self.session_ttl_seconds)
        self.watch(session_id, topics)
        return session_id

    def watch(self, session_id: str, topics: list[str]) -> None:
        self._require_session(session_id)
        if not topics:
            return
        with valkey_errors():
            self.valkey.sadd(self._topics_key(session_id), *topics)
            self.valkey.expire(self._topics_key(session_id), self.session_ttl_seconds)
            for topic in topics:
                self.valkey.sadd(self._topic_key(topic), session_id)

    def publish(self, signal: ChangeSignal) -> int:
        payload = signal.model_dump_json()
        delivered = 0
        with valkey_errors():
            for session_id in self.valkey.smembers(self._topic_key(signal.topic)):
                if not self.valkey.exists(self._user_key(session_id)):
                    # Expired session: prune lazily
                    self.valkey.srem(self._topic_key(signal.topic), session_id)
                    continue
                inbox = self._inbox_key(session_id)
                self.valkey.rpush(inbox, payload)
                self.valkey.expire(inbox, self.session_ttl_seconds)
                delivered += 1
        return delivered

    def poll(self, session_id: str, timeout: float = 0.0, max_signals: int = 100) -> list[ChangeSignal]:
        self._require_session(session_id)
        inbox = self._inbox_key(session_id)

        raw = []
        with valkey_errors():
            first = self.valkey.blpop(inbox, timeout) if timeout > 0 else self.valkey.lpop(inbox)
            if first is not None:
                raw.append(first)
                while len(raw) < max_signals:
                    item = self.valkey.lpop(inbox)
                    if item is None:
                        break
                    raw.append(item)
            self.valkey.expire(self._user_key(session_id), self.session_ttl_seconds)

        return [ChangeSignal.model_validate_json(item) for item in raw]

    def close_session(self, session_id: str) -> None:
        with valkey_errors():
            for topic in self.valkey.smembers(self._topics_key(session_id)):
                self.valkey.srem(self._topic_key(topic), session_id)
            self.valkey.delete(
                self._user_key(session_id),
                self._topics_key(session_id),
                self._inbox_key(session_id),
            )

    def session_user(self, session_id: str) -> UUID:
        with valkey_errors():
            value = self.valkey.get(self._user_key(session_id))
        if value is None:
            raise NotFound("session", session_id)
        return UUID(value)

    def _require_session(self, session_id: str) -> None:
        with valkey_errors():
            alive = self.valkey.exists(self._user_key(session_id))
        if not alive:
            raise NotFound("session", session_id)

    @staticmethod
    def _topic_key(topic: str) -> str:
        return f"changes:topic:{topic}"

    @staticmethod
    def _user_key(session_id: str) -> str:
        return f"changes:session:{session_id}:user"

    @staticmethod
    def _topics_key(session_id: str) -> str:
        return f"changes:session:{session_id}:topics"

    @staticmethod
    def _inbox_key(session_id: str) -> str:
        return f"changes:session:{session_id}:inbox"


# =============================================================================
# NOTIFIER
# =============================================================================


class ChangeNotifier:
    """
    Turns lifecycle events into per-session invalidation signals.

    Publishing is retried on transient broker failures; a signal that still
    cannot be delivered is logged and dropped. The engine operation that
    caused it has already committed and is never failed by notification.
    """

    def __init__(self, broker, publish_attempts: int = 3, retry_delay_seconds: float = 0.05):
        self.broker = broker
        self.publish_attempts = publish_attempts
        self.retry_delay_seconds = retry_delay_seconds

    def register(self, event_bus: EventBus) -> None:
        """Subscribe to every lifecycle and job chat event on the bus."""
        event_bus.subscribe_many(LIFECYCLE_EVENTS + CHAT_EVENTS, self.handle_event)

    def handle_event(self, event: MarketplaceEvent) -> None:
        for signal in self.signals_for(event):
            self._publish(signal)

    def signals_for(self, event: MarketplaceEvent) -> list[ChangeSignal]:
        """Invalidation signals, one per interested topic."""
        reason = event.__class__.__name__

        if isinstance(event, RequestCreated):
            request = event.request
            return [
                ChangeSignal(topic=topic, entity="request", entity_id=request.id, reason=reason)
                for topic in (
                    request_topic(request.id),
                    requester_topic(request.requester_id),
                    OPEN_REQUESTS_TOPIC,
                )
            ]

        if isinstance(event, (JobMessageSent, JobMessagesRead)):
            return self._chat_signals(event, reason)

        if isinstance(event, EngagementEvent):
            engagement = event.engagement
            signals = [
                ChangeSignal(
                    topic=request_topic(engagement.request_id),
                    entity="request", entity_id=engagement.request_id, reason=reason,
                ),
            ]
            signals.extend(
                ChangeSignal(topic=topic, entity="engagement", entity_id=engagement.id, reason=reason)
                for topic in (
                    engagement_topic(engagement.id),
                    requester_topic(engagement.requester_id),
                    provider_topic(engagement.provider_id),
                )
            )
            if isinstance(event, (EngagementAccepted, EngagementCancelled)):
                signals.append(ChangeSignal(
                    topic=OPEN_REQUESTS_TOPIC,
                    entity="request", entity_id=engagement.request_id, reason=reason,
                ))
            return signals

        return []

    # === Sessions ===

    def open_session(self, user_id: UUID, topics: list[str]) -> str:
        """Open an independently addressed session watching the given topics."""
        session_id = self.broker.open_session(user_id, topics)
        logger.info(f"Change session {session_id} opened for user {user_id}")
        return session_id

    def watch(self, session_id: str, topics: list[str]) -> None:
        self.broker.watch(session_id, topics)

    def poll(self, session_id: str, timeout: float = 0.0, max_signals: int = 100) -> list[ChangeSignal]:
        """Pending signals for the session, waiting up to `timeout` seconds for the first."""
        return self.broker.poll(session_id, timeout=timeout, max_signals=max_signals)

    def close_session(self, session_id: str) -> None:
        self.broker.close_session(session_id)
        logger.info(f"Change session {session_id} closed")

    def session_user(self, session_id: str) -> UUID:
        return self.broker.session_user(session_id)

    # === Private ===

    def _chat_signals(self, event, reason: str) -> list[ChangeSignal]:
        """
        The engagement thread, plus the party topic whose unread count moved.

        A new message raises the recipient's count; a read lowers the
        reader's own, which their other sessions need to hear about.
        """
        engagement = event.engagement
        if isinstance(event, JobMessageSent):
            party = event.sender.counterparty
        else:
            party = event.reader

        if party == Party.REQUESTER:
            party_topic = requester_topic(engagement.requester_id)
        else:
            party_topic = provider_topic(engagement.provider_id)

        return [
            ChangeSignal(topic=topic, entity="messages", entity_id=engagement.id, reason=reason)
            for topic in (engagement_topic(engagement.id), party_topic)
        ]

    def _publish(self, signal: ChangeSignal) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.publish_attempts),
            wait=wait_exponential(multiplier=self.retry_delay_seconds, max=2),
            retry=retry_if_exception_type(TransientStoreFailure),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            retrying(self.broker.publish, signal)
        except TransientStoreFailure as e:
            logger.error(
                f"Dropping change signal {signal.signal_id} on {signal.topic} "
                f"after {self.publish_attempts} attempts: {e}"
            )
