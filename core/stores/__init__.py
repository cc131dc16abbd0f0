"""Persistence for requests, engagements and job messages (Postgres and in-memory backends)."""

from core.stores.request_store import RequestStore
from core.stores.engagement_store import EngagementStore
from core.stores.job_message_store import JobMessageStore
from core.stores.memory import (
    InMemoryBackend, InMemoryRequestStore, InMemoryEngagementStore, InMemoryJobMessageStore,
)
from core.stores.write_scope import engine_write_scope
