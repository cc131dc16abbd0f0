"""
Ephemeral storage of triage conversations.

A conversation lives only until it is abandoned, converted into a request, or
its TTL runs out. Nothing here is written to Postgres.
"""

import logging
import threading
from uuid import UUID

from clients.valkey_client import ValkeyClient, valkey_errors
from core.errors import NotFound
from core.models import TriageState

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600


class TriageSessionStore:
    """TriageState as JSON under triage:session:<conversation_id>, with a TTL."""

    KEY_PREFIX = "triage:session:"

    def __init__(self, valkey: ValkeyClient, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.valkey = valkey
        self.ttl_seconds = ttl_seconds

    def save(self, state: TriageState) -> None:
        """Write the state and refresh its TTL."""
        with valkey_errors():
            self.valkey.set_json(self._key(state.conversation_id), state.model_dump(mode="json"), self.ttl_seconds)

    def load(self, conversation_id: UUID) -> TriageState:
        """Raises NotFound if the conversation is gone or expired."""
        with valkey_errors():
            data = self.valkey.get_json(self._key(conversation_id))
        if data is None:
            raise NotFound("conversation", conversation_id)
        return TriageState.model_validate(data)

    def delete(self, conversation_id: UUID) -> bool:
        with valkey_errors():
            return self.valkey.delete(self._key(conversation_id))

    def _key(self, conversation_id: UUID) -> str:
        return f"{self.KEY_PREFIX}{conversation_id}"


class InMemoryTriageSessionStore:
    """Process-local twin of TriageSessionStore (no TTL)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[UUID, str] = {}

    def save(self, state: TriageState) -> None:
        with self._lock:
            self._states[state.conversation_id] = state.model_dump_json()

    def load(self, conversation_id: UUID) -> TriageState:
        with self._lock:
            raw = self._states.get(conversation_id)
        if raw is None:
            raise NotFound("conversation", conversation_id)
        return TriageState.model_validate_json(raw)

    def delete(self, conversation_id: UUID) -> bool:
        with self._lock:
            return self._states.pop(conversation_id, None) is not None
