"""slowapi limits for the payments API.

Three tiers: client payment calls (tight, per IP), provider callbacks
(loose, providers retry in bursts) and admin actions (per admin id).
Storage is configurable so several API instances can share counters
through Redis.
"""

from functools import lru_cache
from typing import Callable

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from libs.common.config import get_settings

PAYMENT_LIMIT = "10/minute"
WEBHOOK_LIMIT = "120/minute"
ADMIN_LIMIT = "200/minute"


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def _limit_key(request: Request) -> str:
    # request.state.admin is set by get_current_user once the JWT checks out
    admin = getattr(request.state, "admin", None)
    if admin is not None:
        return f"admin:{admin.sub}"
    return f"ip:{client_ip(request)}"


@lru_cache
def get_limiter() -> Limiter:
    settings = get_settings()
    return Limiter(
        key_func=_limit_key,
        storage_uri=settings.RATE_LIMIT_STORAGE_URI,
        strategy="fixed-window",
        enabled=settings.RATE_LIMIT_ENABLED,
    )


limiter = get_limiter()


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 in the API's ``{error, details}`` shape."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "details": f"Limit is {exc.detail or PAYMENT_LIMIT}. Try again later.",
        },
        headers={"Retry-After": "60"},
    )


def payment_limit(func: Callable) -> Callable:
    return limiter.limit(PAYMENT_LIMIT)(func)


def webhook_limit(func: Callable) -> Callable:
    return limiter.limit(WEBHOOK_LIMIT)(func)


def admin_limit(func: Callable) -> Callable:
    return limiter.limit(ADMIN_LIMIT)(func)
