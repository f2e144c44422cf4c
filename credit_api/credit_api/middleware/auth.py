"""Bearer-token authentication for user routes.

A valid ``Authorization: Bearer <token>`` puts the caller's user id on
``request.state.sub``, where :func:`credit_api.dependencies.get_current_user`
picks it up.  Probes, API docs, the payment webhook and ``/internal`` routes
are exempt: the last two authenticate with their own shared secrets.
"""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from credit_api.security import TokenManager

logger = logging.getLogger(__name__)

EXEMPT_PATHS: frozenset[str] = frozenset(
    {
        "/ready",
        "/api/v1/health",
        "/api/v1/webhooks/payments",
        "/openapi.json",
        "/favicon.ico",
    }
)
EXEMPT_PREFIXES: tuple[str, ...] = ("/api/v1/internal/", "/docs", "/redoc")


def is_exempt(path: str) -> bool:
    return path in EXEMPT_PATHS or path.startswith(EXEMPT_PREFIXES)


def _unauthorized(detail: str, status_code: int = 401) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Reject user-route requests without a valid bearer token.

    Missing or malformed credentials yield 401, an expired token 403.
    """

    def __init__(self, app: ASGIApp, token_manager: TokenManager) -> None:
        super().__init__(app)
        self._tokens = token_manager

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or is_exempt(request.url.path):
            return await call_next(request)

        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        if not token:
            return _unauthorized("Missing bearer token")
        if scheme.lower() != "bearer":
            return _unauthorized("Authorization header must use Bearer scheme")

        try:
            claims = self._tokens.validate_token(token.strip())
        except PermissionError as exc:
            reason = str(exc)
            if reason == "Token expired":
                return _unauthorized("Token has expired", status_code=403)
            logger.info("Rejected bearer token on %s: %s", request.url.path, reason)
            return _unauthorized(f"Invalid token: {reason}")

        request.state.sub = claims.sub
        return await call_next(request)
