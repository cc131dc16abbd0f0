"""POST /api/actions: unified mutation endpoint."""

from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.base import success_response
from core.models import EngagementStatus, RequestCreate
from core.services.job_chat_service import JobChatService
from core.services.lifecycle_engine import LifecycleEngine


class ActionRequest(BaseModel):
    domain: str
    action: str
    data: dict


def create_actions_router(services: dict) -> APIRouter:
    router = APIRouter()

    handlers = {
        "request": RequestHandler(services["engine"]),
        "engagement": EngagementHandler(services["engine"]),
        "message": MessageHandler(services["job_chat"]),
    }

    @router.post("/actions")
    def perform_action(request: Request, body: ActionRequest):
        handler = handlers.get(body.domain)
        if handler is None:
            raise ValueError(
                f"Unknown domain '{body.domain}'. "
                f"Valid domains: {', '.join(sorted(handlers.keys()))}"
            )

        if body.action not in handler.ALLOWED_ACTIONS:
            raise ValueError(
                f"Action '{body.action}' not allowed on '{body.domain}'. "
                f"Allowed: {', '.join(sorted(handler.ALLOWED_ACTIONS))}"
            )

        method = getattr(handler, f"_handle_{body.action}")
        result = method(body.data, request.state.user_id)
        return success_response(result, request.state.request_id).model_dump(mode="json")

    return router


# =============================================================================
# HANDLER CLASSES
# =============================================================================


class RequestHandler:
    ALLOWED_ACTIONS = {"create"}

    def __init__(self, engine: LifecycleEngine):
        self.engine = engine

    def _handle_create(self, data: dict, user_id: UUID):
        request = self.engine.create_request(user_id, RequestCreate(**data))
        return request.model_dump(mode="json")


class EngagementHandler:
    """
    Engagement transitions. Every action except accept names an existing
    engagement and is authorized against the caller's role on it.
    """

    ALLOWED_ACTIONS = {"accept", "submit_quote", "accept_quote", "decline_quote", "confirm_done", "cancel"}

    def __init__(self, engine: LifecycleEngine):
        self.engine = engine

    def _handle_accept(self, data: dict, user_id: UUID):
        engagement = self.engine.accept(UUID(data["request_id"]), user_id)
        return self.engine.view_for(engagement.id, user_id).model_dump(mode="json")

    def _handle_submit_quote(self, data: dict, user_id: UUID):
        engagement_id = self._require_provider(data, user_id)
        self.engine.submit_quote(engagement_id, data["amount"], data.get("scheduled_time"))
        return self.engine.view_for(engagement_id, user_id).model_dump(mode="json")

    def _handle_accept_quote(self, data: dict, user_id: UUID):
        engagement_id = self._require_requester(data, user_id)
        self.engine.accept_quote(engagement_id)
        return self.engine.view_for(engagement_id, user_id).model_dump(mode="json")

    def _handle_decline_quote(self, data: dict, user_id: UUID):
        engagement_id = self._require_requester(data, user_id)
        self.engine.decline_quote(engagement_id)
        return self.engine.view_for(engagement_id, user_id).model_dump(mode="json")

    def _handle_confirm_done(self, data: dict, user_id: UUID):
        engagement_id = UUID(data["id"])
        party = self._party(engagement_id, user_id)
        engagement = self.engine.confirm_done(engagement_id, party)
        view = engagement.project_for(party).model_dump(mode="json")
        view["completed"] = engagement.status == EngagementStatus.COMPLETED
        return view

    def _handle_cancel(self, data: dict, user_id: UUID):
        engagement_id = UUID(data["id"])
        party = self._party(engagement_id, user_id)
        engagement = self.engine.cancel(engagement_id, data.get("reason"), party)
        return engagement.project_for(party).model_dump(mode="json")

    # === Authorization ===

    def _party(self, engagement_id: UUID, user_id: UUID):
        party = self.engine.get_engagement(engagement_id).party_of(user_id)
        if party is None:
            raise PermissionError(f"Not a party to engagement {engagement_id}")
        return party

    def _require_provider(self, data: dict, user_id: UUID) -> UUID:
        engagement_id = UUID(data["id"])
        if self.engine.get_engagement(engagement_id).provider_id != user_id:
            raise PermissionError(f"Only the provider can quote engagement {engagement_id}")
        return engagement_id

    def _require_requester(self, data: dict, user_id: UUID) -> UUID:
        engagement_id = UUID(data["id"])
        if self.engine.get_engagement(engagement_id).requester_id != user_id:
            raise PermissionError(f"Only the requester can respond to the quote on {engagement_id}")
        return engagement_id


class MessageHandler:
    """Job chat. Party checks live in JobChatService."""

    ALLOWED_ACTIONS = {"send", "mark_read"}

    def __init__(self, job_chat: JobChatService):
        self.job_chat = job_chat

    def _handle_send(self, data: dict, user_id: UUID):
        message = self.job_chat.send_message(UUID(data["engagement_id"]), user_id, data["content"])
        return message.model_dump(mode="json")

    def _handle_mark_read(self, data: dict, user_id: UUID):
        count = self.job_chat.mark_read(UUID(data["engagement_id"]), user_id)
        return {"marked_read": count}
