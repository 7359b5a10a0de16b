"""
Shared-secret authentication middleware for the worker.

Every non-public endpoint requires an X-Worker-Secret header matching
WORKER_SHARED_SECRET. The front end authenticates the user and forwards the
account id in X-User-Id; this worker trusts it once the secret matches.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests without the worker secret."""

    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        worker_secret = os.environ.get("WORKER_SHARED_SECRET", "")
        if not worker_secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, worker_secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
