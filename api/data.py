"""GET /api/data: unified read endpoint."""

from uuid import UUID

from fastapi import APIRouter, Query, Request

from api.base import success_response
from core.models import RequestStatus


VALID_TYPES = {"requests", "engagements", "messages"}


def create_data_router(services: dict) -> APIRouter:
    router = APIRouter()

    engine = services["engine"]
    job_chat = services["job_chat"]

    # -------------------------------------------------------------------------
    # Convenience routes (must be registered before the generic /data route)
    # -------------------------------------------------------------------------

    @router.get("/data/requests/open")
    def open_requests(
        request: Request,
        region: str | None = Query(None),
        limit: int = Query(50, ge=1, le=500),
    ):
        requests = engine.list_open_requests(region=region, limit=limit)
        return success_response(
            [r.model_dump(mode="json") for r in requests], request.state.request_id
        ).model_dump(mode="json")

    @router.get("/data/messages/unread")
    def unread_messages(request: Request):
        counts = job_chat.unread_counts(request.state.user_id)
        return success_response(
            {str(engagement_id): n for engagement_id, n in counts.items()}, request.state.request_id
        ).model_dump(mode="json")

    # -------------------------------------------------------------------------
    # Generic data endpoint
    # -------------------------------------------------------------------------

    @router.get("/data")
    def get_data(
        request: Request,
        type: str | None = Query(None),
        id: str | None = Query(None),
        request_id: str | None = Query(None),
        engagement_id: str | None = Query(None),
        include: str | None = Query(None),
    ):
        if type is None:
            raise ValueError("'type' query parameter is required")

        if type not in VALID_TYPES:
            raise ValueError(f"Unknown type '{type}'. Valid types: {', '.join(sorted(VALID_TYPES))}")

        user_id = request.state.user_id
        includes = set(include.split(",")) if include else set()

        if type == "requests":
            data = _handle_requests(engine, user_id, id, includes)
        elif type == "engagements":
            data = _handle_engagements(engine, user_id, id, request_id)
        else:
            data = _handle_messages(job_chat, user_id, engagement_id)

        return success_response(data, request.state.request_id).model_dump(mode="json")

    return router


def _handle_requests(engine, user_id: UUID, id: str | None, includes: set[str]):
    if not id:
        return [r.model_dump(mode="json") for r in engine.list_requests_for(user_id)]

    service_request = engine.get_request(UUID(id))
    engagements = engine.list_engagements_for_request(service_request.id)
    is_owner = service_request.requester_id == user_id
    provider_engagements = [e for e in engagements if e.provider_id == user_id]

    # Open requests are visible to any provider browsing the feed
    if not is_owner and not provider_engagements and service_request.status != RequestStatus.NEW:
        raise PermissionError(f"Request {id} is not visible to this user")

    data = service_request.model_dump(mode="json")
    if not is_owner:
        data["advisory_transcript"] = None

    if "engagements" in includes:
        visible = engagements if is_owner else provider_engagements
        data["engagements"] = [
            e.project_for(e.party_of(user_id)).model_dump(mode="json") for e in visible
        ]
    return data


def _handle_engagements(engine, user_id: UUID, id: str | None, request_id: str | None):
    if id:
        return engine.view_for(UUID(id), user_id).model_dump(mode="json")

    if request_id:
        service_request = engine.get_request(UUID(request_id))
        engagements = engine.list_engagements_for_request(service_request.id)
        if service_request.requester_id != user_id:
            engagements = [e for e in engagements if e.provider_id == user_id]
    else:
        engagements = engine.list_engagements_for_provider(user_id)

    return [e.project_for(e.party_of(user_id)).model_dump(mode="json") for e in engagements]


def _handle_messages(job_chat, user_id: UUID, engagement_id: str | None):
    if not engagement_id:
        raise ValueError("'engagement_id' is required for type=messages")
    messages = job_chat.list_messages(UUID(engagement_id), user_id)
    return [m.model_dump(mode="json") for m in messages]
