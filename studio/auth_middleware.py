"""
Shared-secret authentication middleware.

Every endpoint except the public ones requires an X-Worker-Secret header
matching WORKER_SHARED_SECRET. The gateway attaches it, together with the
caller's X-User-Id, when forwarding requests here.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests that do not carry the shared secret."""

    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        if not WORKER_SECRET:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(
                status_code=500,
                content={"error": "config_error", "message": "WORKER_SHARED_SECRET not configured"},
            )

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, WORKER_SECRET):
            return JSONResponse(
                status_code=401,
                content={"error": "unauthorized", "message": "Invalid or missing worker secret"},
            )

        return await call_next(request)
