"""/api/triage: advisory conversations before a request is raised."""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from api.base import success_response
from core.models import IntakeData, TriageState
from core.triage.conversation import AdvisoryService
from core.triage.machine import TriageStateMachine


class MessageBody(BaseModel):
    message: str = Field(..., min_length=1)
    images: list[str] = Field(default_factory=list)


class ConvertBody(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)


def _state_payload(state: TriageState) -> dict:
    data = state.model_dump(mode="json")
    data["offer_provider"] = TriageStateMachine(state).should_offer_provider()
    return data


def create_triage_router(services: dict) -> APIRouter:
    router = APIRouter()

    advisory: AdvisoryService = services["advisory"]

    @router.post("/triage/conversations")
    def start_conversation(request: Request, body: IntakeData):
        state = advisory.start(request.state.user_id, body)
        return success_response(_state_payload(state), request.state.request_id).model_dump(mode="json")

    @router.get("/triage/conversations/{conversation_id}")
    def get_conversation(request: Request, conversation_id: UUID):
        state = advisory.get(conversation_id, request.state.user_id)
        return success_response(_state_payload(state), request.state.request_id).model_dump(mode="json")

    @router.post("/triage/conversations/{conversation_id}/messages")
    def send_message(request: Request, conversation_id: UUID, body: MessageBody):
        reply = advisory.exchange(conversation_id, request.state.user_id, body.message, body.images)
        return success_response(reply.model_dump(mode="json"), request.state.request_id).model_dump(mode="json")

    @router.post("/triage/conversations/{conversation_id}/convert")
    def convert_conversation(request: Request, conversation_id: UUID, body: ConvertBody):
        created = advisory.convert_to_request(conversation_id, request.state.user_id, body.fields)
        return success_response(created.model_dump(mode="json"), request.state.request_id).model_dump(mode="json")

    @router.delete("/triage/conversations/{conversation_id}")
    def abandon_conversation(request: Request, conversation_id: UUID):
        advisory.abandon(conversation_id, request.state.user_id)
        return success_response({"abandoned": True}, request.state.request_id).model_dump(mode="json")

    return router
