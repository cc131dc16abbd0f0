"""
Advisory conversation service.

Runs one homeowner chat: each message goes to the classifier, the proposal is
filtered by the TriageStateMachine, and the reply that goes back obeys the
resulting state. A finished conversation can be turned into a Request with
the transcript attached, after which the triage state is discarded.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any
from uuid import UUID, uuid4

from core.errors import NotFound
from core.models import (
    AdvisoryReply,
    IntakeData,
    Request,
    RequestCreate,
    TranscriptMessage,
    TriageState,
    TriageStateName,
)
from core.services.lifecycle_engine import LifecycleEngine
from core.triage.classifier import build_classifier_input
from core.triage.intake import intake_description, issue_display_name
from core.triage.machine import TriageStateMachine
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Fields a requester may set on conversion; photos and the transcript come
# from the conversation itself
CONVERTIBLE_FIELDS = frozenset({"title", "description", "region", "preferred_date", "preferred_time"})


class AdvisoryService:
    """
    Args:
        sessions: TriageSessionStore or InMemoryTriageSessionStore
        classifier: Anything with classify(ClassifierInput) -> ClassifierProposal
        engine: LifecycleEngine used to create the request on conversion
    """

    def __init__(self, sessions, classifier, engine: LifecycleEngine):
        self.sessions = sessions
        self.classifier = classifier
        self.engine = engine
        # Serializes exchanges per conversation within this process
        self._locks: dict[UUID, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def start(self, user_id: UUID, intake: IntakeData) -> TriageState:
        """Open a conversation in the diagnostic state."""
        now = now_utc()
        state = TriageState(
            conversation_id=uuid4(),
            user_id=user_id,
            intake=intake,
            created_at=now,
            updated_at=now,
        )
        self.sessions.save(state)
        logger.info(f"Advisory conversation {state.conversation_id} started ({intake.issue_type.value})")
        return state

    def get(self, conversation_id: UUID, user_id: UUID) -> TriageState:
        """Raises NotFound if gone, PermissionError if owned by someone else."""
        state = self.sessions.load(conversation_id)
        if state.user_id != user_id:
            raise PermissionError(f"Conversation {conversation_id} belongs to another user")
        return state

    def exchange(
        self,
        conversation_id: UUID,
        user_id: UUID,
        message: str,
        images: list[str] | None = None,
    ) -> AdvisoryReply:
        """
        Handle one user message.

        The classifier's reply text is used only when its proposed state was
        taken as is; otherwise the machine restates the current state.
        """
        with self._locked(conversation_id):
            state = self.get(conversation_id, user_id)
            machine = TriageStateMachine(state)

            latest = TranscriptMessage(role="user", content=message, timestamp=now_utc(), images=images or [])
            proposal = self.classifier.classify(build_classifier_input(state, latest))
            decision = machine.propose(proposal)

            if decision.accepted and proposal.response_text.strip():
                reply = proposal.response_text
            else:
                reply = machine.restatement()

            follow_ups = [] if state.state == TriageStateName.EMERGENCY else proposal.follow_up_questions

            machine.record_exchange(message, reply, images)
            self.sessions.save(state)

        policy = machine.content_policy()
        return AdvisoryReply(
            conversation_id=conversation_id,
            message=reply,
            state=state.state,
            category=state.category,
            follow_up_questions=follow_ups,
            offer_provider=policy.offer_provider,
            decision=decision,
            metadata={
                "confidence": proposal.confidence,
                "repair_steps_allowed": policy.repair_steps_allowed,
                "lock_reasons": list(state.lock_reasons),
                "user_exchanges": state.user_exchanges,
            },
        )

    def abandon(self, conversation_id: UUID, user_id: UUID) -> None:
        """Discard the conversation."""
        with self._locked(conversation_id):
            self.get(conversation_id, user_id)
            self.sessions.delete(conversation_id)
        self._drop_lock(conversation_id)
        logger.info(f"Advisory conversation {conversation_id} abandoned")

    def convert_to_request(
        self,
        conversation_id: UUID,
        requester_id: UUID,
        fields: dict[str, Any] | None = None,
    ) -> Request:
        """
        Create a Request from the conversation, then discard the triage state.

        Title and description default to the intake's; `fields` may set any of
        CONVERTIBLE_FIELDS. Photos from the intake and the chat are attached
        in order, and the transcript is always the conversation's own.

        Raises:
            NotFound: Conversation gone
            PermissionError: Not the requester's conversation
            ValueError: fields names something outside CONVERTIBLE_FIELDS
            pydantic.ValidationError: fields do not make a valid request
        """
        fields = fields or {}
        rejected = sorted(set(fields) - CONVERTIBLE_FIELDS)
        if rejected:
            raise ValueError(f"Cannot set {', '.join(rejected)} when converting a conversation")

        with self._locked(conversation_id):
            state = self.get(conversation_id, requester_id)

            images = list(state.intake.photos)
            for message in state.transcript:
                images.extend(ref for ref in message.images if ref not in images)

            data = {
                "title": issue_display_name(state.intake.issue_type),
                "description": intake_description(state.intake),
                **fields,
                "attached_image_refs": images,
                "advisory_transcript": [m.model_dump(mode="json") for m in state.transcript],
            }

            request = self.engine.create_request(requester_id, RequestCreate(**data))
            self.sessions.delete(conversation_id)

        self._drop_lock(conversation_id)
        logger.info(f"Advisory conversation {conversation_id} converted to request {request.id}")
        return request

    @contextmanager
    def _locked(self, conversation_id: UUID):
        """
        Hold the conversation's lock.

        A conversation that has expired from the session store drops its
        lock here, so expired conversations do not accumulate locks.
        """
        with self._locks_guard:
            lock = self._locks.setdefault(conversation_id, threading.Lock())
        try:
            with lock:
                yield
        except NotFound:
            self._drop_lock(conversation_id)
            raise

    def _drop_lock(self, conversation_id: UUID) -> None:
        with self._locks_guard:
            self._locks.pop(conversation_id, None)
