"""
In-memory request, engagement and job message stores.

Same interface and guarantees as the Postgres stores, for local development
and tests. One re-entrant lock per backend plays the role of the database:
every store call and every transaction holds it, so check-and-insert and
read-then-write sequences are atomic. A transaction snapshots every table on
entry and restores them if the block raises, so a failed multi-step
transition never leaves partial state.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any
from uuid import UUID, uuid4

from core.errors import AlreadyEngaged, InvalidState, NotFound, TransientStoreFailure
from core.models import (
    Engagement, EngagementUpdate, EngagementStatus, JobMessage,
    Request, RequestCreate, RequestStatus,
)
from core.stores.write_scope import require_engine_scope
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class InMemoryBackend:
    """Shared tables and lock for one pair of in-memory stores."""

    def __init__(self):
        self._lock = threading.RLock()
        self.requests: dict[UUID, Request] = {}
        self.engagements: dict[UUID, Engagement] = {}
        self.job_messages: dict[UUID, JobMessage] = {}
        self._failures: dict[str, int] = {}

    @contextmanager
    def transaction(self):
        """Serialize the block against every other store call; roll back on error."""
        with self._lock:
            requests_snapshot = dict(self.requests)
            engagements_snapshot = dict(self.engagements)
            messages_snapshot = dict(self.job_messages)
            try:
                yield self
            except BaseException:
                self.requests = requests_snapshot
                self.engagements = engagements_snapshot
                self.job_messages = messages_snapshot
                raise

    def inject_failure(self, operation: str, times: int = 1) -> None:
        """Make the next `times` calls of a store operation raise TransientStoreFailure."""
        self._failures[operation] = times

    def _check_failure(self, operation: str) -> None:
        remaining = self._failures.get(operation, 0)
        if remaining > 0:
            self._failures[operation] = remaining - 1
            raise TransientStoreFailure(f"Injected failure in {operation}")


class InMemoryRequestStore:
    """Request persistence over an InMemoryBackend."""

    def __init__(self, backend: InMemoryBackend):
        self.backend = backend

    def transaction(self):
        return self.backend.transaction()

    def create(self, requester_id: UUID, data: RequestCreate) -> Request:
        with self.backend.transaction():
            self.backend._check_failure("request.create")
            now = now_utc()
            request = Request(
                id=uuid4(),
                requester_id=requester_id,
                status=RequestStatus.NEW,
                created_at=now,
                updated_at=now,
                **data.model_dump(),
            )
            self.backend.requests[request.id] = request
            return request

    def get(self, request_id: UUID, for_update: bool = False) -> Request:
        with self.backend.transaction():
            self.backend._check_failure("request.get")
            request = self.backend.requests.get(request_id)
            if request is None:
                raise NotFound("request", request_id)
            return request

    def list_by_requester(self, requester_id: UUID, limit: int = 50) -> list[Request]:
        with self.backend.transaction():
            matches = [r for r in self.backend.requests.values() if r.requester_id == requester_id]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit]

    def list_open(self, region: str | None = None, limit: int = 100) -> list[Request]:
        with self.backend.transaction():
            matches = [
                r for r in self.backend.requests.values()
                if r.status == RequestStatus.NEW and (region is None or r.region == region)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches[:limit]

    def set_status(
        self,
        request_id: UUID,
        status: RequestStatus,
        expected: RequestStatus | None = None
    ) -> Request:
        require_engine_scope("Request status")

        with self.backend.transaction():
            self.backend._check_failure("request.set_status")
            current = self.get(request_id)
            if expected is not None and current.status != expected:
                raise InvalidState(
                    f"Request {request_id} is {current.status.value}, expected {expected.value}",
                    current_status=current.status.value,
                )
            updated = current.model_copy(update={"status": status, "updated_at": now_utc()})
            self.backend.requests[request_id] = updated
            return updated


class InMemoryEngagementStore:
    """Engagement persistence over an InMemoryBackend."""

    def __init__(self, backend: InMemoryBackend):
        self.backend = backend

    def transaction(self):
        return self.backend.transaction()

    def create(self, request_id: UUID, requester_id: UUID, provider_id: UUID) -> Engagement:
        with self.backend.transaction():
            self.backend._check_failure("engagement.create")
            if self.find_active(request_id, provider_id) is not None:
                raise AlreadyEngaged(request_id, provider_id)

            now = now_utc()
            engagement = Engagement(
                id=uuid4(),
                request_id=request_id,
                requester_id=requester_id,
                provider_id=provider_id,
                status=EngagementStatus.PENDING_QUOTE,
                quote_amount=None,
                scheduled_date=None,
                scheduled_time=None,
                requester_confirmed=False,
                provider_confirmed=False,
                created_at=now,
                updated_at=now,
            )
            self.backend.engagements[engagement.id] = engagement
            return engagement

    def get(self, engagement_id: UUID, for_update: bool = False) -> Engagement:
        with self.backend.transaction():
            self.backend._check_failure("engagement.get")
            engagement = self.backend.engagements.get(engagement_id)
            if engagement is None:
                raise NotFound("engagement", engagement_id)
            return engagement

    def find_active(self, request_id: UUID, provider_id: UUID) -> Engagement | None:
        with self.backend.transaction():
            for engagement in self.backend.engagements.values():
                if (
                    engagement.request_id == request_id
                    and engagement.provider_id == provider_id
                    and engagement.status != EngagementStatus.CANCELLED
                ):
                    return engagement
        return None

    def list_by_provider(self, provider_id: UUID, limit: int = 100) -> list[Engagement]:
        with self.backend.transaction():
            matches = [e for e in self.backend.engagements.values() if e.provider_id == provider_id]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[:limit]

    def list_by_request(self, request_id: UUID) -> list[Engagement]:
        with self.backend.transaction():
            matches = [e for e in self.backend.engagements.values() if e.request_id == request_id]
        matches.sort(key=lambda e: e.created_at)
        return matches

    def update(self, engagement_id: UUID, data: EngagementUpdate | dict[str, Any]) -> Engagement:
        if isinstance(data, dict):
            data = EngagementUpdate(**data)

        with self.backend.transaction():
            self.backend._check_failure("engagement.update")
            current = self.get(engagement_id)
            updates = data.model_dump(exclude_unset=True)
            if not updates:
                return current
            updates["updated_at"] = now_utc()
            updated = current.model_copy(update=updates)
            self.backend.engagements[engagement_id] = updated
            return updated


class InMemoryJobMessageStore:
    """Job message persistence over an InMemoryBackend."""

    def __init__(self, backend: InMemoryBackend):
        self.backend = backend

    def create(self, engagement_id: UUID, sender_id: UUID, content: str) -> JobMessage:
        with self.backend.transaction():
            self.backend._check_failure("job_message.create")
            message = JobMessage(
                id=uuid4(),
                engagement_id=engagement_id,
                sender_id=sender_id,
                content=content,
                created_at=now_utc(),
            )
            self.backend.job_messages[message.id] = message
            return message

    def list_by_engagement(self, engagement_id: UUID, limit: int = 200) -> list[JobMessage]:
        with self.backend.transaction():
            matches = [m for m in self.backend.job_messages.values() if m.engagement_id == engagement_id]
        matches.sort(key=lambda m: m.created_at)
        return matches[-limit:] if limit > 0 else []

    def mark_read(self, engagement_id: UUID, reader_id: UUID) -> int:
        with self.backend.transaction():
            now = now_utc()
            unread = [
                m for m in self.backend.job_messages.values()
                if m.engagement_id == engagement_id and m.sender_id != reader_id and m.read_at is None
            ]
            for message in unread:
                self.backend.job_messages[message.id] = message.model_copy(update={"read_at": now})
            return len(unread)

    def unread_counts(self, user_id: UUID) -> dict[UUID, int]:
        counts: dict[UUID, int] = {}
        with self.backend.transaction():
            for message in self.backend.job_messages.values():
                if message.read_at is not None or message.sender_id == user_id:
                    continue
                engagement = self.backend.engagements.get(message.engagement_id)
                if engagement is None or engagement.party_of(user_id) is None:
                    continue
                counts[message.engagement_id] = counts.get(message.engagement_id, 0) + 1
        return counts
