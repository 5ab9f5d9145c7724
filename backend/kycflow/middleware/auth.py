"""API key authentication middleware.

Bearer token from KYCFLOW_API_KEY. When no key is configured, authentication
is disabled (development mode).

Email-link endpoints are exempt: the approval token in the query string is
the capability, and the reviewer clicking it has no API key.
"""

from __future__ import annotations

import logging
import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from kycflow.config import settings

logger = logging.getLogger(__name__)

_EXEMPT_PATHS = frozenset({"/health", "/docs", "/openapi.json", "/redoc", "/"})

# Authorized by the approval token itself
_APPROVAL_TOKEN_PATHS = frozenset({
    "/api/v1/approvals/submit",
    "/api/v1/edd/submit",
})


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, api_key: str | None = None) -> None:
        super().__init__(app)
        self._api_key = api_key

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else settings.kycflow_api_key

    async def dispatch(self, request: Request, call_next):
        api_key = self.api_key
        path = request.url.path

        if not api_key or path in _EXEMPT_PATHS or path in _APPROVAL_TOKEN_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing authentication. Use Authorization: Bearer <key>"},
            )

        if not secrets.compare_digest(auth_header[7:], api_key):
            logger.warning(
                "Invalid API key attempt from %s on %s",
                request.client.host if request.client else "unknown",
                path,
            )
            return JSONResponse(status_code=403, content={"detail": "Invalid API key."})

        return await call_next(request)
