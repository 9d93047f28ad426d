"""Middleware configuration for FastAPI application"""
import logging
import time
import uuid

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings

api_access_logger = logging.getLogger("api_access")

SECURITY_HEADERS = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


def get_allowed_origins():
    """Get list of allowed CORS origins (browser-facing /forms/* only)"""
    return list(settings.ALLOWED_ORIGINS)


class PathScopedCORSMiddleware:
    """CORSMiddleware applied only to requests under ``path_prefix``"""

    def __init__(self, app, path_prefix: str, **cors_options):
        self.app = app
        self.path_prefix = path_prefix.rstrip("/")
        self.cors = CORSMiddleware(app, **cors_options)

    def _in_scope(self, path: str) -> bool:
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and self._in_scope(scope["path"]):
            await self.cors(scope, receive, send)
        else:
            await self.app(scope, receive, send)


def setup_cors_middleware(app):
    """Setup CORS middleware for the browser-facing /forms endpoints"""
    app.add_middleware(
        PathScopedCORSMiddleware,
        path_prefix="/forms",
        allow_origins=get_allowed_origins(),
        allow_credentials=False,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["content-type"],
        max_age=600,
    )


async def request_context_middleware(request: Request, call_next):
    """Attach a request id, security headers and an access log line to every response"""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.monotonic()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        api_access_logger.info(
            f"{request.method} {request.url.path} {status_code} {elapsed_ms}ms request_id={request_id}"
        )
