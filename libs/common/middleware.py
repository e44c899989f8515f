"""Request tracing middleware for the payments API.

Every request gets an ``X-Request-ID`` (echoed from the caller or generated)
and one completion log line with its status and duration. Provider callbacks
under ``/webhooks/`` carry the provider name so a missed confirmation can be
traced from the logs alone.

Usage:
    from libs.common.middleware import add_observability_middleware

    app = FastAPI()
    add_observability_middleware(app)
"""

import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from libs.common.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    set_request_context,
)

logger = get_logger(__name__)

# Probes and status pings that would drown the log
QUIET_PATHS = frozenset({"/health", "/webhooks/nowpayments:GET"})

WEBHOOK_PREFIX = "/webhooks/"


def _is_quiet(request: Request) -> bool:
    path = request.url.path
    return path in QUIET_PATHS or f"{path}:{request.method}" in QUIET_PATHS


def _webhook_provider(path: str) -> Optional[str]:
    if not path.startswith(WEBHOOK_PREFIX):
        return None
    return path[len(WEBHOOK_PREFIX):].split("/", 1)[0] or None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = set_request_context(
            request_id=request.headers.get("X-Request-ID"),
            path=request.url.path,
            method=request.method,
        )
        fields = {}
        provider = _webhook_provider(request.url.path)
        if provider:
            fields["provider"] = provider

        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                fields["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
                logger.exception("Request failed", extra={"extra_fields": fields})
                raise

            fields["status_code"] = response.status_code
            fields["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)

            if not _is_quiet(request):
                # 4xx on a webhook usually means a signature or config problem
                if response.status_code >= 500 or (
                    provider and response.status_code >= 400
                ):
                    logger.warning("Request completed", extra={"extra_fields": fields})
                else:
                    logger.info("Request completed", extra={"extra_fields": fields})

            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_request_context()


def add_observability_middleware(app: FastAPI) -> None:
    """Configure logging and install request tracing on the app."""
    configure_logging()
    app.add_middleware(RequestContextMiddleware)
