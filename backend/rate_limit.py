"""
Rate limiting for all public API endpoints.
Webhook calls are keyed by tenant (the provider posts from a shared pool of IPs);
everything else is keyed by client IP. Returns 429 with Retry-After for graceful back-off.
"""

import json
import os
import re
from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

# Same pattern as config.CORS_ORIGIN_REGEX so 429 responses can add CORS when middleware is skipped
_CORS_ORIGIN_PATTERN = re.compile(r"^https://[^/]+\.(web\.app|firebaseapp\.com)$")

_WEBHOOK_PATH = re.compile(r"^/(?:test-)?webhook/(?:whatsapp/)?([^/]+)/?$")


def _get_identifier(request: Request) -> str:
    """
    Rate limit key. Webhook paths: "tenant:<tenantId>".
    Otherwise the leftmost X-Forwarded-For address, else the direct client host.
    """
    match = _WEBHOOK_PATH.match(request.url.path)
    if match:
        return f"tenant:{match.group(1)}"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# Default: 200 requests per minute per key. Webhooks get their own per-tenant budget.
_default = os.getenv("RATE_LIMIT_DEFAULT", "200/minute")
WEBHOOK_LIMIT = os.getenv("RATE_LIMIT_WEBHOOK", "600/minute")
limiter = Limiter(
    key_func=_get_identifier,
    default_limits=[_default],
    headers_enabled=True,
    retry_after="http-date",
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Return 429 with JSON body and Retry-After header.
    Adds CORS headers so browsers don't block when this response bypasses CORS middleware.
    """
    retry_after_seconds = 60
    body = {
        "detail": "Too many requests. Please slow down and retry later.",
        "retry_after_seconds": retry_after_seconds,
    }
    headers = {"Retry-After": str(retry_after_seconds)}
    origin = request.headers.get("origin")
    if origin and _CORS_ORIGIN_PATTERN.match(origin):
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return Response(
        content=json.dumps(body),
        status_code=429,
        media_type="application/json",
        headers=headers,
    )
