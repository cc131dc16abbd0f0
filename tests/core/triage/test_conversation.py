"""Tests for AdvisoryService."""

from unittest.mock import Mock

import pytest

from core.errors import NotFound
from core.models import (
    ClassifierProposal,
    EmergencyIndicator,
    IntakeData,
    IssueType,
    RequestStatus,
    TriageStateName,
)
from core.triage.conversation import AdvisoryService
from core.triage.session_store import InMemoryTriageSessionStore


@pytest.fixture
def classifier():
    return Mock()


@pytest.fixture
def sessions():
    return InMemoryTriageSessionStore()


@pytest.fixture
def advisory(sessions, classifier, engine):
    return AdvisoryService(sessions, classifier, engine)


@pytest.fixture
def intake():
    return IntakeData(
        issue_type=IssueType.FAUCET,
        when_started="Last week",
        fields={"fixture": "bathroom basin"},
        photos=["intake/tap.jpg"],
    )


@pytest.fixture
def conversation(advisory, intake, requester_id):
    return advisory.start(requester_id, intake)


def _propose(classifier, state, **kwargs):
    classifier.classify.return_value = ClassifierProposal(proposed_state=state, **kwargs)


class TestStart:

    def test_starts_diagnostic_and_saved(self, advisory, conversation, requester_id):
        loaded = advisory.get(conversation.conversation_id, requester_id)

        assert loaded.state == TriageStateName.DIAGNOSTIC
        assert loaded.user_exchanges == 0

    def test_other_user_is_refused(self, advisory, conversation, provider_id):
        with pytest.raises(PermissionError):
            advisory.get(conversation.conversation_id, provider_id)


class TestExchange:

    def test_accepted_proposal_uses_classifier_reply(self, advisory, classifier, conversation, requester_id):
        _propose(
            classifier, TriageStateName.CATEGORY_1, category=1, confidence=0.9,
            response_text="Replace the washer.", follow_up_questions=["Is it a mixer tap?"],
        )

        reply = advisory.exchange(conversation.conversation_id, requester_id, "It drips from the spout")

        assert reply.message == "Replace the washer."
        assert reply.state == TriageStateName.CATEGORY_1
        assert reply.follow_up_questions == ["Is it a mixer tap?"]
        assert reply.metadata["repair_steps_allowed"] is True
        assert reply.metadata["user_exchanges"] == 1

    def test_refused_proposal_restates_state(self, advisory, classifier, conversation, requester_id):
        _propose(classifier, TriageStateName.CATEGORY_1, category=1, confidence=0.3, response_text="Unscrew the valve.")

        reply = advisory.exchange(conversation.conversation_id, requester_id, "Drips a bit")

        assert reply.state == TriageStateName.DIAGNOSTIC
        assert reply.decision.accepted is False
        assert "Unscrew" not in reply.message

    def test_emergency_drops_follow_ups_and_offers_provider(self, advisory, classifier, conversation, requester_id):
        _propose(
            classifier, TriageStateName.DIAGNOSTIC,
            emergency_indicators=[EmergencyIndicator.WATER_NEAR_ELECTRICS],
            follow_up_questions=["Where is the socket?"],
        )

        reply = advisory.exchange(conversation.conversation_id, requester_id, "Water is dripping into the socket")

        assert reply.state == TriageStateName.EMERGENCY
        assert reply.follow_up_questions == []
        assert reply.offer_provider is True

    def test_classifier_sees_the_new_message(self, advisory, classifier, conversation, requester_id):
        _propose(classifier, TriageStateName.DIAGNOSTIC, response_text="Which tap?")

        advisory.exchange(conversation.conversation_id, requester_id, "Hot tap won't stop", images=["chat/1.jpg"])

        data = classifier.classify.call_args.args[0]
        assert data.window[-1].content == "Hot tap won't stop"
        assert data.window[-1].images == ["chat/1.jpg"]

    def test_state_persists_between_exchanges(self, advisory, classifier, conversation, requester_id):
        _propose(classifier, TriageStateName.ESCALATION_LOCKED, category=2, risk_indicators=["mains_pipe"])
        advisory.exchange(conversation.conversation_id, requester_id, "Pipe in the wall is wet")

        _propose(classifier, TriageStateName.CATEGORY_1, category=1, confidence=0.99, response_text="Easy fix")
        reply = advisory.exchange(conversation.conversation_id, requester_id, "Actually it's fine")

        assert reply.state == TriageStateName.ESCALATION_LOCKED
        assert reply.metadata["lock_reasons"] == ["mains_pipe"]
        assert len(advisory.get(conversation.conversation_id, requester_id).transcript) == 4


class TestConvertToRequest:

    def test_creates_request_and_discards_conversation(
        self, advisory, classifier, conversation, requester_id, engine
    ):
        _propose(classifier, TriageStateName.DIAGNOSTIC, response_text="Which tap?")
        advisory.exchange(conversation.conversation_id, requester_id, "Basin tap", images=["chat/1.jpg", "intake/tap.jpg"])

        request = advisory.convert_to_request(conversation.conversation_id, requester_id, {"region": "Leeds"})

        assert request.status == RequestStatus.NEW
        assert request.title == "Faucet Problem"
        assert request.region == "Leeds"
        assert request.attached_image_refs == ["intake/tap.jpg", "chat/1.jpg"]
        assert [m["role"] for m in request.advisory_transcript] == ["user", "assistant"]
        assert engine.get_request(request.id).id == request.id
        with pytest.raises(NotFound):
            advisory.get(conversation.conversation_id, requester_id)

    def test_fields_override_defaults(self, advisory, conversation, requester_id):
        request = advisory.convert_to_request(
            conversation.conversation_id, requester_id,
            {"title": "Dripping basin tap", "preferred_time": ["Morning"]},
        )

        assert request.title == "Dripping basin tap"
        assert request.preferred_time == ["Morning"]
        assert request.description.startswith("Faucet Problem - started last week.")

    def test_other_user_cannot_convert(self, advisory, conversation, provider_id):
        with pytest.raises(PermissionError):
            advisory.convert_to_request(conversation.conversation_id, provider_id)

    @pytest.mark.parametrize("field", ["advisory_transcript", "attached_image_refs", "status"])
    def test_conversation_record_cannot_be_replaced(self, advisory, conversation, requester_id, field):
        with pytest.raises(ValueError, match=field):
            advisory.convert_to_request(conversation.conversation_id, requester_id, {field: []})

        assert advisory.get(conversation.conversation_id, requester_id).conversation_id == conversation.conversation_id


class TestAbandon:

    def test_abandon_discards(self, advisory, conversation, requester_id):
        advisory.abandon(conversation.conversation_id, requester_id)
        with pytest.raises(NotFound):
            advisory.get(conversation.conversation_id, requester_id)


class TestConversationLocks:

    def test_expired_conversation_releases_its_lock(self, advisory, sessions, classifier, conversation, requester_id):
        _propose(classifier, TriageStateName.DIAGNOSTIC, response_text="Which tap?")
        advisory.exchange(conversation.conversation_id, requester_id, "Basin tap")
        assert conversation.conversation_id in advisory._locks

        sessions.delete(conversation.conversation_id)
        with pytest.raises(NotFound):
            advisory.exchange(conversation.conversation_id, requester_id, "Still there?")

        assert conversation.conversation_id not in advisory._locks

    def test_converted_and_abandoned_conversations_hold_no_lock(self, advisory, intake, conversation, requester_id):
        other = advisory.start(requester_id, intake)

        advisory.convert_to_request(conversation.conversation_id, requester_id)
        advisory.abandon(other.conversation_id, requester_id)

        assert advisory._locks == {}
