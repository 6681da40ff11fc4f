"""
HTTP client used to deliver scheduled posts.

Retries are a transport concern: :class:`RetryTransport` repeats a request
whose response is not 2xx, or that failed to reach the server, up to
``max_retries`` extra times with a linear backoff (retry ``n`` waits
``n * retry_delay`` seconds). The scheduler only sees the final response.
"""

from __future__ import annotations

import asyncio

import httpx

from sheska.configuration.scheduler_settings import SchedulerSettings
from sheska.util.logger import get_logger

logger = get_logger("scheduler_http")

USER_AGENT = "Sheska/1.0"


class RetryTransport(httpx.AsyncBaseTransport):
    """Wraps another async transport and retries unsuccessful requests."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = 3,
        retry_delay: float = 5.0,
    ) -> None:
        self._transport = transport
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        retry = 0
        while True:
            try:
                response = await self._transport.handle_async_request(request)
            except httpx.TransportError as exc:
                if retry >= self.max_retries:
                    raise
                logger.warning(
                    "[SCHEDULER HTTP] %s %s failed (attempt %d/%d): %s",
                    request.method, request.url, retry + 1, self.max_retries + 1, exc,
                )
            else:
                if 200 <= response.status_code < 300 or retry >= self.max_retries:
                    return response
                logger.warning(
                    "[SCHEDULER HTTP] %s %s returned %d (attempt %d/%d)",
                    request.method, request.url, response.status_code, retry + 1, self.max_retries + 1,
                )
                await response.aclose()

            retry += 1
            await asyncio.sleep(retry * self.retry_delay)

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_http_client(
    settings: SchedulerSettings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Create the long-lived client shared by every scheduled post.

    Args:
        settings: Retry count, backoff step and connection limits.
        transport: Inner transport to wrap. Defaults to a pooled
            ``httpx.AsyncHTTPTransport``; tests pass an ``httpx.MockTransport``.
    """
    if transport is None:
        transport = httpx.AsyncHTTPTransport(
            retries=settings.connect_attempts - 1,
            limits=httpx.Limits(max_connections=settings.max_connections),
        )

    return httpx.AsyncClient(
        transport=RetryTransport(
            transport,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay_seconds,
        ),
        timeout=httpx.Timeout(30.0, connect=settings.connect_timeout_seconds),
        headers={"User-Agent": USER_AGENT},
    )
