"""HTTP utilities providing retry/backoff semantics for provider calls."""

from __future__ import annotations

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class RetryConfig:
    def __init__(self, *, attempts: int = 3, backoff_seconds: float = 1.0) -> None:
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds


async def send_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    retry_config: RetryConfig | None = None,
    **kwargs,
) -> httpx.Response:
    """Send a request, retrying transport errors and transient status codes.

    The last response is returned once attempts run out so callers can map the
    status themselves; a transport error on the final attempt is re-raised.
    """
    config = retry_config or RetryConfig()
    attempt = 0

    while True:
        attempt += 1
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            if attempt >= config.attempts:
                raise
            logger.warning(
                "Transport error calling %s (attempt %s/%s): %s",
                url,
                attempt,
                config.attempts,
                exc,
            )
        else:
            if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= config.attempts:
                return response
            logger.warning(
                "Transient status %s from %s (attempt %s/%s)",
                response.status_code,
                url,
                attempt,
                config.attempts,
            )
        await asyncio.sleep(config.backoff_seconds * attempt)


__all__ = ["RETRYABLE_STATUS_CODES", "RetryConfig", "send_with_retry"]
