"""Shared test fixtures for the marketplace test suite."""

import os
import pytest
from uuid import UUID
from pathlib import Path

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from core.event_bus import EventBus
from core.events import LIFECYCLE_EVENTS
from core.models import RequestCreate
from core.services.lifecycle_engine import LifecycleEngine
from core.stores import InMemoryBackend, InMemoryEngagementStore, InMemoryRequestStore
from utils.user_context import clear_current_user_id


# =============================================================================
# TEST USER CONSTANTS
# =============================================================================

REQUESTER_ID = UUID("00000000-0000-0000-0000-000000000001")
PROVIDER_ID = UUID("00000000-0000-0000-0000-000000000002")
PROVIDER_B_ID = UUID("00000000-0000-0000-0000-000000000003")
OUTSIDER_ID = UUID("00000000-0000-0000-0000-000000000009")

SCHEMA_PATH = Path(__file__).parent.parent / "schema" / "marketplace.sql"


# =============================================================================
# USER CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_user_context():
    """Ensure clean user context before and after each test."""
    clear_current_user_id()
    yield
    clear_current_user_id()


@pytest.fixture
def requester_id() -> UUID:
    return REQUESTER_ID


@pytest.fixture
def provider_id() -> UUID:
    return PROVIDER_ID


@pytest.fixture
def provider_b_id() -> UUID:
    return PROVIDER_B_ID


# =============================================================================
# IN-MEMORY ENGINE FIXTURES
# =============================================================================


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def request_store(backend):
    return InMemoryRequestStore(backend)


@pytest.fixture
def engagement_store(backend):
    return InMemoryEngagementStore(backend)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def published(event_bus):
    """Every lifecycle event published on the bus, in order."""
    received = []
    event_bus.subscribe_many(LIFECYCLE_EVENTS, received.append)
    return received


@pytest.fixture
def engine(request_store, engagement_store, event_bus):
    return LifecycleEngine(request_store, engagement_store, event_bus)


@pytest.fixture
def make_request(engine, requester_id):
    """Factory: create a request as the test requester."""

    def _make(owner=None, **overrides):
        fields = {
            "title": "Leaking kitchen tap",
            "description": "Tap drips constantly",
            "region": "Leeds",
            "preferred_time": ["Morning", "Afternoon"],
        }
        fields.update(overrides)
        return engine.create_request(owner or requester_id, RequestCreate(**fields))

    return _make


# =============================================================================
# DATABASE FIXTURES (skipped without a configured database)
# =============================================================================


def _require_vault():
    if not os.getenv("VAULT_ADDR"):
        pytest.skip("VAULT_ADDR not set; infrastructure tests skipped")


@pytest.fixture(scope="session")
def db():
    """Session-scoped PostgresClient with the marketplace schema applied."""
    _require_vault()
    from clients.postgres_client import PostgresClient
    from clients.vault_client import get_database_url

    client = PostgresClient(get_database_url())
    client.execute(SCHEMA_PATH.read_text())
    yield client
    client.close()


@pytest.fixture
def clean_db(db):
    """Empty marketplace tables before the test."""
    db.execute("TRUNCATE job_messages, engagements, requests, audit_log, profiles CASCADE")
    return db


# =============================================================================
# VALKEY FIXTURES (skipped without a configured Valkey)
# =============================================================================


@pytest.fixture(scope="session")
def valkey():
    """Session-scoped ValkeyClient."""
    _require_vault()
    from clients.valkey_client import ValkeyClient
    from clients.vault_client import get_valkey_url

    client = ValkeyClient(get_valkey_url())
    yield client
    client.close()
