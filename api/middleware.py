"""Request-scoped middleware for API requests."""

from typing import Protocol
from uuid import UUID, uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from utils.user_context import set_current_user_id, clear_current_user_id


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns a unique request ID to every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class IdentityProvider(Protocol):
    """External identity service. Returns None for unknown or expired tokens."""

    def resolve(self, token: str) -> UUID | None: ...


class IdentityMiddleware(BaseHTTPMiddleware):
    """
    Resolves the caller from a bearer token and sets user context.

    Identity itself lives outside this service; the injected provider turns a
    token into a user id. Public paths bypass the check.
    """

    PUBLIC_PATHS = ["/health", "/docs", "/openapi.json"]

    def __init__(self, app, identity_provider: IdentityProvider):
        super().__init__(app)
        self._identity_provider = identity_provider

    def _is_public_path(self, path: str) -> bool:
        return any(path == public or path.startswith(f"{public}/") for public in self.PUBLIC_PATHS)

    async def dispatch(self, request: Request, call_next):
        if self._is_public_path(request.url.path):
            return await call_next(request)

        request_id = getattr(request.state, "request_id", None)
        scheme, _, token = request.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.NOT_AUTHENTICATED, "Authentication required", request_id=request_id
                ).model_dump(mode="json"),
            )

        user_id = self._identity_provider.resolve(token.strip())
        if user_id is None:
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.INVALID_TOKEN, "Invalid or expired token", request_id=request_id
                ).model_dump(mode="json"),
            )

        set_current_user_id(user_id)
        request.state.user_id = user_id
        try:
            return await call_next(request)
        finally:
            clear_current_user_id()
