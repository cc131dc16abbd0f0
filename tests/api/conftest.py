"""API test fixtures: in-memory services behind the real app, one client per user."""

from unittest.mock import Mock
from uuid import UUID

import pytest
from starlette.testclient import TestClient

from api.app import build_in_memory_services, create_app
from core.models import ClassifierProposal, TriageStateName


OUTSIDER_ID = UUID("00000000-0000-0000-0000-000000000009")


class StaticIdentityProvider:
    """Resolves a fixed set of bearer tokens."""

    def __init__(self, tokens: dict[str, UUID]):
        self.tokens = tokens

    def resolve(self, token: str) -> UUID | None:
        return self.tokens.get(token)


# =============================================================================
# SERVICES
# =============================================================================


@pytest.fixture
def classifier():
    mock = Mock()
    mock.classify.return_value = ClassifierProposal(
        proposed_state=TriageStateName.DIAGNOSTIC,
        response_text="Where exactly is the water coming from?",
        follow_up_questions=["Is it hot or cold water?"],
    )
    return mock


@pytest.fixture
def push_sink():
    return Mock()


@pytest.fixture
def services(classifier, push_sink):
    return build_in_memory_services(classifier, push_sink)


@pytest.fixture
def engine(services):
    """The app's own engine, for arranging state directly."""
    return services["engine"]


# =============================================================================
# APP & CLIENT FIXTURES
# =============================================================================


@pytest.fixture
def outsider_id() -> UUID:
    return OUTSIDER_ID


@pytest.fixture
def app(services, requester_id, provider_id, provider_b_id, outsider_id):
    identity = StaticIdentityProvider({
        "requester-token": requester_id,
        "provider-token": provider_id,
        "provider-b-token": provider_b_id,
        "outsider-token": outsider_id,
    })
    return create_app(services, identity)


def _client(app, token: str | None = None) -> TestClient:
    c = TestClient(app, raise_server_exceptions=False)
    if token:
        c.headers["Authorization"] = f"Bearer {token}"
    return c


@pytest.fixture
def requester_client(app):
    return _client(app, "requester-token")


@pytest.fixture
def provider_client(app):
    return _client(app, "provider-token")


@pytest.fixture
def provider_b_client(app):
    return _client(app, "provider-b-token")


@pytest.fixture
def outsider_client(app):
    return _client(app, "outsider-token")


@pytest.fixture
def unauthed_client(app):
    """No Authorization header."""
    return _client(app)


@pytest.fixture
def act():
    """POST /api/actions and return the response."""

    def _act(client: TestClient, domain: str, action: str, data: dict):
        return client.post("/api/actions", json={"domain": domain, "action": action, "data": data})

    return _act


@pytest.fixture
def open_request(requester_client, act):
    """A NEW request created through the API, as returned by it."""
    response = act(requester_client, "request", "create", {
        "title": "Leaking kitchen tap",
        "description": "Tap drips constantly",
        "region": "Leeds",
        "preferred_time": ["Morning", "Afternoon"],
    })
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def accepted(provider_client, act, open_request):
    """Engagement view (provider side) after the provider accepted open_request."""
    response = act(provider_client, "engagement", "accept", {"request_id": open_request["id"]})
    assert response.status_code == 200
    return response.json()["data"]
