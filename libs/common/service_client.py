"""Async HTTP helper for outbound calls to payment providers and sibling services.

Every call carries a timeout and is retried on transport errors so a single
dropped connection does not fail a verification.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)

# Delay between retry attempts (seconds).
_RETRY_BACKOFF = 0.5


async def outbound_request(
    *,
    method: str,
    url: str,
    headers: Optional[dict] = None,
    json: Any = None,
    params: Optional[dict] = None,
    timeout: Optional[float] = None,
    retries: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> httpx.Response:
    """Make an HTTP call with timeout and retry on transport failure.

    Args:
        method: HTTP method (GET, POST, ...).
        url: Absolute URL.
        headers: Extra headers. The current request id is forwarded.
        json: Optional JSON body.
        params: Optional query parameters.
        timeout: Seconds, defaults to PROVIDER_TIMEOUT_SECONDS.
        retries: Extra attempts after the first, defaults to PROVIDER_MAX_RETRIES.
        client: Reuse an existing client instead of opening one per call.

    Returns:
        The httpx.Response object. HTTP error statuses are not raised.

    Raises:
        httpx.TransportError once all attempts fail.
    """
    settings = get_settings()
    timeout = settings.PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout
    retries = settings.PROVIDER_MAX_RETRIES if retries is None else retries

    headers = dict(headers or {})
    request_id = get_request_id()
    if request_id:
        headers.setdefault("X-Request-ID", request_id)

    attempt = 0
    while True:
        try:
            if client is not None:
                return await client.request(
                    method, url, headers=headers, json=json, params=params,
                    timeout=timeout,
                )
            async with httpx.AsyncClient(timeout=timeout) as owned:
                return await owned.request(
                    method, url, headers=headers, json=json, params=params
                )
        except httpx.TransportError as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "Retrying %s %s after transport error (%s), attempt %d",
                method,
                url,
                exc.__class__.__name__,
                attempt + 1,
            )
            await asyncio.sleep(_RETRY_BACKOFF)
