"""Tests for /api/changes session endpoints and topic authorization."""

from uuid import uuid4

import pytest

from api.changes import allowed_topics


def _open(client, topics=None):
    response = client.post("/api/changes/sessions", json={"topics": topics or []})
    assert response.status_code == 200
    return response.json()["data"]["session_id"]


def _poll(client, session_id, **params):
    response = client.get(f"/api/changes/sessions/{session_id}", params=params)
    assert response.status_code == 200
    return response.json()["data"]


# =============================================================================
# TOPIC AUTHORIZATION
# =============================================================================


class TestAllowedTopics:

    def test_own_topics_always_included(self, requester_id):
        topics = allowed_topics(requester_id, [])

        assert topics == [f"requester:{requester_id}", f"provider:{requester_id}", "requests:open"]

    def test_entity_topics_allowed(self, requester_id):
        request_topic = f"request:{uuid4()}"
        engagement_topic = f"engagement:{uuid4()}"

        topics = allowed_topics(requester_id, [request_topic, engagement_topic])

        assert topics[-2:] == [request_topic, engagement_topic]

    def test_duplicates_collapsed(self, requester_id):
        topics = allowed_topics(requester_id, ["requests:open", f"requester:{requester_id}"])
        assert len(topics) == 3

    @pytest.mark.parametrize("topic", ["provider:{other}", "requester:{other}", "admin:all"])
    def test_foreign_topics_refused(self, requester_id, topic):
        with pytest.raises(PermissionError):
            allowed_topics(requester_id, [topic.format(other=uuid4())])

    def test_malformed_entity_id_rejected(self, requester_id):
        with pytest.raises(ValueError):
            allowed_topics(requester_id, ["request:not-a-uuid"])


# =============================================================================
# SESSIONS
# =============================================================================


class TestOpenSession:

    def test_open_returns_effective_topics(self, provider_client, provider_id):
        response = provider_client.post("/api/changes/sessions", json={"topics": []})

        data = response.json()["data"]
        assert data["session_id"]
        assert f"provider:{provider_id}" in data["topics"]

    def test_foreign_topic_forbidden(self, provider_client, requester_id):
        response = provider_client.post("/api/changes/sessions", json={"topics": [f"requester:{requester_id}"]})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_unauthenticated_returns_401(self, unauthed_client):
        response = unauthed_client.post("/api/changes/sessions", json={"topics": []})
        assert response.status_code == 401


class TestPoll:

    def test_empty_poll_returns_nothing(self, provider_client):
        session_id = _open(provider_client)
        assert _poll(provider_client, session_id) == []

    def test_new_request_signalled_to_feed_watchers(self, requester_client, provider_client, act):
        session_id = _open(provider_client)

        created = act(requester_client, "request", "create", {"title": "Boiler", "description": "No heat"})

        signals = _poll(provider_client, session_id)
        assert [(s["topic"], s["entity_id"], s["reason"]) for s in signals] == [
            ("requests:open", created.json()["data"]["id"], "RequestCreated"),
        ]

    def test_earlier_changes_not_replayed(self, provider_client, open_request):
        session_id = _open(provider_client)
        assert _poll(provider_client, session_id) == []

    def test_accept_signals_both_parties(self, requester_client, provider_client, act, open_request):
        requester_session = _open(requester_client)
        provider_session = _open(provider_client)

        act(provider_client, "engagement", "accept", {"request_id": open_request["id"]})

        requester_signals = _poll(requester_client, requester_session)
        provider_signals = _poll(provider_client, provider_session)

        assert {s["reason"] for s in requester_signals} == {"EngagementAccepted"}
        assert {s["reason"] for s in provider_signals} == {"EngagementAccepted"}
        # Both watch requests:open too
        assert {s["topic"] for s in requester_signals} >= {"requests:open"}

    def test_signals_carry_no_field_values(self, requester_client, provider_client, act, open_request):
        session_id = _open(requester_client)
        act(provider_client, "engagement", "accept", {"request_id": open_request["id"]})

        for signal in _poll(requester_client, session_id):
            assert set(signal) == {"signal_id", "topic", "entity", "entity_id", "reason", "emitted_at"}

    def test_entity_topic_watch(self, provider_client, provider_b_client, act, accepted):
        session_id = _open(provider_b_client, [f"engagement:{accepted['id']}"])

        act(provider_client, "engagement", "submit_quote", {"id": accepted["id"], "amount": "80"})

        signals = _poll(provider_b_client, session_id)
        assert [s["topic"] for s in signals] == [f"engagement:{accepted['id']}"]
        assert signals[0]["reason"] == "QuoteSubmitted"

    def test_max_signals_respected(self, requester_client, provider_client, act, open_request):
        session_id = _open(requester_client)
        act(provider_client, "engagement", "accept", {"request_id": open_request["id"]})

        first = _poll(requester_client, session_id, max_signals=1)
        rest = _poll(requester_client, session_id)

        assert len(first) == 1
        assert len(rest) >= 1

    def test_timeout_out_of_range_returns_422(self, requester_client):
        session_id = _open(requester_client)
        response = requester_client.get(f"/api/changes/sessions/{session_id}", params={"timeout": 600})
        assert response.status_code == 422

    def test_other_users_session_forbidden(self, requester_client, outsider_client):
        session_id = _open(requester_client)

        response = outsider_client.get(f"/api/changes/sessions/{session_id}")
        assert response.status_code == 403

    def test_unknown_session_returns_404(self, requester_client):
        response = requester_client.get(f"/api/changes/sessions/{uuid4()}")
        assert response.status_code == 404


class TestWatch:

    def test_watch_adds_topics(self, provider_b_client, provider_client, act, accepted):
        session_id = _open(provider_b_client)
        topic = f"engagement:{accepted['id']}"

        response = provider_b_client.post(f"/api/changes/sessions/{session_id}/watch", json={"topics": [topic]})
        assert response.status_code == 200
        assert topic in response.json()["data"]["topics"]

        act(provider_client, "engagement", "cancel", {"id": accepted["id"]})

        assert topic in {s["topic"] for s in _poll(provider_b_client, session_id)}

    def test_watch_other_users_session_forbidden(self, requester_client, outsider_client):
        session_id = _open(requester_client)

        response = outsider_client.post(f"/api/changes/sessions/{session_id}/watch", json={"topics": []})
        assert response.status_code == 403


class TestCloseSession:

    def test_close_then_poll_returns_404(self, requester_client):
        session_id = _open(requester_client)

        response = requester_client.delete(f"/api/changes/sessions/{session_id}")
        assert response.json()["data"] == {"closed": True}

        assert requester_client.get(f"/api/changes/sessions/{session_id}").status_code == 404
