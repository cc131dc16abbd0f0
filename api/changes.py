"""/api/changes: per-session change signals (long poll)."""

from uuid import UUID

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from api.base import success_response
from core.models.change import OPEN_REQUESTS_TOPIC, provider_topic, requester_topic
from core.services.change_notifier import ChangeNotifier

MAX_POLL_SECONDS = 30.0

_ENTITY_PREFIXES = ("request:", "engagement:")


class TopicsBody(BaseModel):
    topics: list[str] = Field(default_factory=list)


def allowed_topics(user_id: UUID, topics: list[str]) -> list[str]:
    """
    Topics a user may watch.

    Every session watches the user's own requester/provider topics and the
    open-requests feed. Other users' party topics are refused. Entity topics
    are allowed; their signals carry ids only.
    """
    own = [requester_topic(user_id), provider_topic(user_id), OPEN_REQUESTS_TOPIC]
    result = list(own)
    for topic in topics:
        if topic in result:
            continue
        if not topic.startswith(_ENTITY_PREFIXES):
            raise PermissionError(f"Cannot watch topic '{topic}'")
        UUID(topic.split(":", 1)[1])
        result.append(topic)
    return result


def create_changes_router(services: dict) -> APIRouter:
    router = APIRouter()

    notifier: ChangeNotifier = services["notifier"]

    def _owned(request: Request, session_id: str) -> None:
        if notifier.session_user(session_id) != request.state.user_id:
            raise PermissionError(f"Session {session_id} belongs to another user")

    @router.post("/changes/sessions")
    def open_session(request: Request, body: TopicsBody):
        topics = allowed_topics(request.state.user_id, body.topics)
        session_id = notifier.open_session(request.state.user_id, topics)
        return success_response(
            {"session_id": session_id, "topics": topics}, request.state.request_id
        ).model_dump(mode="json")

    @router.post("/changes/sessions/{session_id}/watch")
    def watch(request: Request, session_id: str, body: TopicsBody):
        _owned(request, session_id)
        topics = allowed_topics(request.state.user_id, body.topics)
        notifier.watch(session_id, topics)
        return success_response({"session_id": session_id, "topics": topics}, request.state.request_id).model_dump(
            mode="json"
        )

    @router.get("/changes/sessions/{session_id}")
    def poll(
        request: Request,
        session_id: str,
        timeout: float = Query(0.0, ge=0.0, le=MAX_POLL_SECONDS),
        max_signals: int = Query(100, ge=1, le=500),
    ):
        _owned(request, session_id)
        signals = notifier.poll(session_id, timeout=timeout, max_signals=max_signals)
        return success_response(
            [s.model_dump(mode="json") for s in signals], request.state.request_id
        ).model_dump(mode="json")

    @router.delete("/changes/sessions/{session_id}")
    def close_session(request: Request, session_id: str):
        _owned(request, session_id)
        notifier.close_session(session_id)
        return success_response({"closed": True}, request.state.request_id).model_dump(mode="json")

    return router
