"""Tests for POST /api/actions unified mutation endpoint."""

from decimal import Decimal
from uuid import uuid4

import pytest
from starlette.testclient import TestClient


@pytest.fixture
def quoted(provider_client, act, accepted):
    response = act(provider_client, "engagement", "submit_quote", {
        "id": accepted["id"], "amount": "150", "scheduled_time": "Morning",
    })
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def in_progress(requester_client, act, quoted):
    response = act(requester_client, "engagement", "accept_quote", {"id": quoted["id"]})
    assert response.status_code == 200
    return response.json()["data"]


# =============================================================================
# AUTHENTICATION & VALIDATION
# =============================================================================


class TestActionsAuthentication:

    def test_unauthenticated_returns_401(self, unauthed_client, act):
        response = act(unauthed_client, "request", "create", {"title": "Nope"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "NOT_AUTHENTICATED"

    def test_unknown_token_returns_401(self, app, act):
        client = TestClient(app, raise_server_exceptions=False)
        client.headers["Authorization"] = "Bearer expired"
        response = act(client, "request", "create", {})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"


class TestActionsValidation:

    def test_missing_domain_returns_422(self, requester_client):
        response = requester_client.post("/api/actions", json={"action": "create", "data": {}})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_domain_returns_400(self, requester_client, act):
        response = act(requester_client, "invoice", "create", {})

        assert response.status_code == 400
        assert "Unknown domain" in response.json()["error"]["message"]

    def test_disallowed_action_returns_400(self, requester_client, act):
        response = act(requester_client, "request", "delete", {})

        assert response.status_code == 400
        assert "not allowed" in response.json()["error"]["message"]

    def test_invalid_request_fields_return_400(self, requester_client, act):
        response = act(requester_client, "request", "create", {"title": "", "description": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_id_returns_400(self, provider_client, act):
        response = act(provider_client, "engagement", "submit_quote", {"amount": "10"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"

    def test_malformed_id_returns_400(self, provider_client, act):
        response = act(provider_client, "engagement", "accept", {"request_id": "not-a-uuid"})
        assert response.status_code == 400


# =============================================================================
# REQUESTS
# =============================================================================


class TestCreateRequest:

    def test_create_owned_by_caller(self, open_request, requester_id):
        assert open_request["requester_id"] == str(requester_id)
        assert open_request["status"] == "new"
        assert open_request["preferred_time"] == ["Morning", "Afternoon"]

    def test_client_supplied_status_ignored(self, requester_client, act):
        response = act(requester_client, "request", "create", {
            "title": "Boiler", "description": "No heat", "status": "completed",
        })

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "new"


# =============================================================================
# ENGAGEMENT LIFECYCLE
# =============================================================================


class TestAccept:

    def test_provider_accepts(self, accepted, open_request, provider_id, requester_id):
        assert accepted["status"] == "pending"
        assert accepted["viewer"] == "provider"
        assert accepted["counterparty_id"] == str(requester_id)
        assert accepted["request_id"] == open_request["id"]
        assert accepted["awaiting_action"] == "submit_quote"

    def test_second_provider_gets_already_engaged(self, provider_b_client, act, accepted, open_request):
        response = act(provider_b_client, "engagement", "accept", {"request_id": open_request["id"]})

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ALREADY_ENGAGED"
        assert error["details"]["request_id"] == open_request["id"]
        assert error["details"]["current_status"] == "accepted"

    def test_same_provider_retry_learns_engagement_id(self, provider_client, act, accepted, open_request):
        response = act(provider_client, "engagement", "accept", {"request_id": open_request["id"]})

        assert response.status_code == 409
        assert response.json()["error"]["details"]["engagement_id"] == accepted["id"]

    def test_requester_cannot_accept_own_request(self, requester_client, act, open_request):
        response = act(requester_client, "engagement", "accept", {"request_id": open_request["id"]})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"

    def test_unknown_request_returns_404(self, provider_client, act):
        response = act(provider_client, "engagement", "accept", {"request_id": str(uuid4())})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


class TestQuoting:

    def test_provider_submits_quote(self, quoted):
        assert quoted["status"] == "quoted"
        assert Decimal(quoted["quote_amount"]) == Decimal("150")
        assert quoted["scheduled_time"] == "Morning"
        assert quoted["quote_is_current"] is True
        assert quoted["awaiting_action"] is None

    def test_requester_cannot_quote(self, requester_client, act, accepted):
        response = act(requester_client, "engagement", "submit_quote", {"id": accepted["id"], "amount": "10"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.parametrize("amount", [0, -10, "abc", "10000000000"])
    def test_bad_amount_returns_400(self, provider_client, act, accepted, amount):
        response = act(provider_client, "engagement", "submit_quote", {"id": accepted["id"], "amount": amount})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_AMOUNT"
        assert error["details"] == {"current_status": "pending"}

    def test_unoffered_slot_returns_400(self, provider_client, act, accepted):
        response = act(provider_client, "engagement", "submit_quote", {
            "id": accepted["id"], "amount": "90", "scheduled_time": "Evening",
        })

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_TIME_SLOT"
        assert error["details"] == {"current_status": "pending"}

    def test_requote_while_quoted_returns_current_status(self, provider_client, act, quoted):
        response = act(provider_client, "engagement", "submit_quote", {"id": quoted["id"], "amount": "90"})

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "INVALID_STATE"
        assert error["details"] == {"current_status": "quoted"}

    def test_requester_sees_pending_response(self, requester_client, quoted):
        response = requester_client.get("/api/data", params={"type": "engagements", "id": quoted["id"]})

        view = response.json()["data"]
        assert view["viewer"] == "requester"
        assert view["awaiting_action"] == "respond_to_quote"


class TestQuoteResponses:

    def test_decline_then_requote(self, requester_client, provider_client, act, quoted):
        declined = act(requester_client, "engagement", "decline_quote", {"id": quoted["id"]}).json()["data"]
        assert declined["status"] == "declined"
        assert declined["quote_is_current"] is False

        requoted = act(provider_client, "engagement", "submit_quote", {
            "id": quoted["id"], "amount": 120, "scheduled_time": "Afternoon",
        }).json()["data"]
        assert requoted["status"] == "quoted"
        assert Decimal(requoted["quote_amount"]) == Decimal("120")

    def test_accept_quote_moves_request_in_progress(self, requester_client, in_progress, open_request):
        assert in_progress["status"] == "in_progress"
        assert in_progress["awaiting_action"] == "confirm_done"

        request = requester_client.get("/api/data", params={"type": "requests", "id": open_request["id"]})
        assert request.json()["data"]["status"] == "in_progress"

    def test_provider_cannot_accept_own_quote(self, provider_client, act, quoted):
        response = act(provider_client, "engagement", "accept_quote", {"id": quoted["id"]})
        assert response.status_code == 403

    def test_outsider_cannot_decline(self, outsider_client, act, quoted):
        response = act(outsider_client, "engagement", "decline_quote", {"id": quoted["id"]})
        assert response.status_code == 403


class TestConfirmDone:

    def test_dual_confirmation_completes(self, requester_client, provider_client, act, in_progress, open_request):
        first = act(requester_client, "engagement", "confirm_done", {"id": in_progress["id"]}).json()["data"]
        assert first["viewer_confirmed"] is True
        assert first["counterparty_confirmed"] is False
        assert first["completed"] is False

        second = act(provider_client, "engagement", "confirm_done", {"id": in_progress["id"]}).json()["data"]
        assert second["status"] == "completed"
        assert second["completed"] is True

        request = requester_client.get("/api/data", params={"type": "requests", "id": open_request["id"]})
        assert request.json()["data"]["status"] == "completed"

    def test_repeat_confirmation_is_idempotent(self, requester_client, act, in_progress):
        act(requester_client, "engagement", "confirm_done", {"id": in_progress["id"]})
        response = act(requester_client, "engagement", "confirm_done", {"id": in_progress["id"]})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "in_progress"

    def test_confirm_before_work_starts_rejected(self, requester_client, act, quoted):
        response = act(requester_client, "engagement", "confirm_done", {"id": quoted["id"]})

        assert response.status_code == 409
        assert response.json()["error"]["details"]["current_status"] == "quoted"

    def test_outsider_cannot_confirm(self, outsider_client, act, in_progress):
        response = act(outsider_client, "engagement", "confirm_done", {"id": in_progress["id"]})
        assert response.status_code == 403


class TestCancel:

    def test_either_party_cancels(self, provider_client, requester_client, act, quoted, open_request):
        response = act(provider_client, "engagement", "cancel", {"id": quoted["id"], "reason": "Van broke down"})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

        request = requester_client.get("/api/data", params={"type": "requests", "id": open_request["id"]})
        assert request.json()["data"]["status"] == "cancelled"

    def test_cancel_terminal_rejected(self, requester_client, act, accepted):
        act(requester_client, "engagement", "cancel", {"id": accepted["id"]})
        response = act(requester_client, "engagement", "cancel", {"id": accepted["id"]})

        assert response.status_code == 409
        assert response.json()["error"]["details"]["current_status"] == "cancelled"

    def test_outsider_cannot_cancel(self, outsider_client, act, accepted):
        response = act(outsider_client, "engagement", "cancel", {"id": accepted["id"]})
        assert response.status_code == 403

    def test_unknown_engagement_returns_404(self, requester_client, act):
        response = act(requester_client, "engagement", "cancel", {"id": str(uuid4())})
        assert response.status_code == 404


class TestPushNotifications:
    """The app's push handler fires on lifecycle events."""

    def test_accept_pushes_to_requester(self, push_sink, accepted, requester_id):
        push_sink.send.assert_called()
        assert push_sink.send.call_args.args[0] == requester_id
