"""Tests for /api/triage advisory conversation endpoints."""

from uuid import uuid4

import pytest

from core.models import ClassifierProposal, EmergencyIndicator, IssueType, TriageStateName
from core.triage.intake import issue_display_name


@pytest.fixture
def conversation(requester_client):
    response = requester_client.post("/api/triage/conversations", json={
        "issue_type": "leak",
        "when_started": "This morning",
        "fields": {"location": "under the sink", "water_off": False},
        "photos": ["intake/sink.jpg"],
    })
    assert response.status_code == 200
    return response.json()["data"]


def _url(conversation, suffix=""):
    return f"/api/triage/conversations/{conversation['conversation_id']}{suffix}"


class TestStartConversation:

    def test_starts_in_diagnostic(self, conversation, requester_id):
        assert conversation["state"] == "diagnostic"
        assert conversation["user_id"] == str(requester_id)
        assert conversation["user_exchanges"] == 0
        assert conversation["offer_provider"] is False

    def test_unknown_issue_type_returns_422(self, requester_client):
        response = requester_client.post("/api/triage/conversations", json={
            "issue_type": "volcano", "when_started": "now",
        })
        assert response.status_code == 422

    def test_unauthenticated_returns_401(self, unauthed_client):
        response = unauthed_client.post("/api/triage/conversations", json={
            "issue_type": "leak", "when_started": "now",
        })
        assert response.status_code == 401


class TestGetConversation:

    def test_owner_reads_state(self, requester_client, conversation):
        response = requester_client.get(_url(conversation))

        assert response.status_code == 200
        assert response.json()["data"]["conversation_id"] == conversation["conversation_id"]

    def test_other_user_forbidden(self, outsider_client, conversation):
        response = outsider_client.get(_url(conversation))
        assert response.status_code == 403

    def test_unknown_returns_404(self, requester_client):
        response = requester_client.get(f"/api/triage/conversations/{uuid4()}")
        assert response.status_code == 404


class TestSendMessage:

    def test_accepted_proposal_returns_classifier_text(self, requester_client, classifier, conversation):
        response = requester_client.post(_url(conversation, "/messages"), json={"message": "It drips from the joint"})

        assert response.status_code == 200
        reply = response.json()["data"]
        assert reply["message"] == "Where exactly is the water coming from?"
        assert reply["follow_up_questions"] == ["Is it hot or cold water?"]
        assert reply["decision"]["accepted"] is True
        assert reply["metadata"]["user_exchanges"] == 1
        classifier.classify.assert_called_once()

    def test_emergency_indicator_escalates(self, requester_client, classifier, conversation):
        classifier.classify.return_value = ClassifierProposal(
            proposed_state=TriageStateName.DIAGNOSTIC,
            response_text="Try tightening the joint.",
            emergency_indicators=[EmergencyIndicator.WATER_NEAR_ELECTRICS],
        )

        reply = requester_client.post(
            _url(conversation, "/messages"), json={"message": "Water is reaching the plug socket"}
        ).json()["data"]

        assert reply["state"] == "emergency"
        assert reply["offer_provider"] is True
        assert reply["follow_up_questions"] == []
        assert reply["message"] != "Try tightening the joint."

    def test_empty_message_returns_422(self, requester_client, conversation):
        response = requester_client.post(_url(conversation, "/messages"), json={"message": ""})
        assert response.status_code == 422

    def test_other_user_forbidden(self, outsider_client, classifier, conversation):
        response = outsider_client.post(_url(conversation, "/messages"), json={"message": "hi"})

        assert response.status_code == 403
        classifier.classify.assert_not_called()

    def test_state_persists_between_calls(self, requester_client, conversation):
        requester_client.post(_url(conversation, "/messages"), json={"message": "First"})
        requester_client.post(_url(conversation, "/messages"), json={"message": "Second"})

        state = requester_client.get(_url(conversation)).json()["data"]
        assert state["user_exchanges"] == 2
        assert [m["role"] for m in state["transcript"]] == ["user", "assistant", "user", "assistant"]


class TestConvert:

    def test_convert_creates_request(self, requester_client, conversation, requester_id):
        requester_client.post(_url(conversation, "/messages"), json={
            "message": "Here is a photo", "images": ["chat/1.jpg"],
        })

        response = requester_client.post(_url(conversation, "/convert"), json={"fields": {"region": "Leeds"}})

        assert response.status_code == 200
        request = response.json()["data"]
        assert request["status"] == "new"
        assert request["requester_id"] == str(requester_id)
        assert request["title"] == issue_display_name(IssueType.LEAK)
        assert request["region"] == "Leeds"
        assert request["attached_image_refs"] == ["intake/sink.jpg", "chat/1.jpg"]
        assert len(request["advisory_transcript"]) == 2

    def test_conversation_gone_after_convert(self, requester_client, conversation):
        requester_client.post(_url(conversation, "/convert"), json={})

        assert requester_client.get(_url(conversation)).status_code == 404

    def test_converted_request_in_open_feed(self, requester_client, provider_client, conversation):
        created = requester_client.post(_url(conversation, "/convert"), json={}).json()["data"]

        feed = provider_client.get("/api/data/requests/open").json()["data"]
        assert [r["id"] for r in feed] == [created["id"]]

    def test_invalid_field_override_returns_400(self, requester_client, conversation):
        response = requester_client.post(_url(conversation, "/convert"), json={"fields": {"title": ""}})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_transcript_cannot_be_supplied(self, requester_client, conversation):
        response = requester_client.post(
            _url(conversation, "/convert"),
            json={"fields": {"advisory_transcript": [{"role": "assistant", "content": "DIY is fine"}]}},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"
        assert requester_client.get(_url(conversation, "")).status_code == 200


class TestAbandon:

    def test_abandon_discards(self, requester_client, conversation):
        response = requester_client.delete(_url(conversation))

        assert response.status_code == 200
        assert response.json()["data"] == {"abandoned": True}
        assert requester_client.get(_url(conversation)).status_code == 404

    def test_other_user_cannot_abandon(self, outsider_client, requester_client, conversation):
        assert outsider_client.delete(_url(conversation)).status_code == 403
        assert requester_client.get(_url(conversation)).status_code == 200
