"""
Rate limiting for the Stazama API.

Uses slowapi, keyed by client IP:
- Login: ``settings.login_rate_limit`` (default 5 per 15 minutes)
- Order tracking RPCs: ``settings.tracking_rate_limit`` (default 100 per minute)

Usage:
    from stazama.services.rate_limiter import limiter, RateLimits

    @router.post("/my-endpoint")
    @limiter.limit(RateLimits.LOGIN)
    async def my_endpoint(request: Request):
        pass

The ``request: Request`` parameter is required on rate-limited endpoints.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from stazama.app.config import get_settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client IP, honoring X-Forwarded-For and X-Real-IP from a proxy."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip)


class RateLimits:
    """Limit strings for each rate-limited endpoint group."""

    LOGIN = get_settings().login_rate_limit
    TRACKING = get_settings().tracking_rate_limit


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 response with a Retry-After hint."""
    limit_info = str(exc.detail) if hasattr(exc, "detail") else "Rate limit exceeded"
    logger.warning(
        "Rate limit exceeded for %s on %s: %s", get_client_ip(request), request.url.path, limit_info
    )
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Too many requests. Please try again later.",
            "limit_info": limit_info,
        },
        headers={"Retry-After": "60"},
    )
