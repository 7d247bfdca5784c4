"""Rate-limited fetching with retries and exponential backoff."""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import orjson
import structlog
from dateutil import parser as dateparser

from kdp_pipeline.errors import PermanentFetchError, TransientFetchError
from kdp_pipeline.fetch.ratelimit import RateLimiter
from kdp_pipeline.fetch.requests import FetchRequest
from kdp_pipeline.fetch.session import UserAgentPool
from kdp_pipeline.observability.metrics import MetricsRegistry
from kdp_pipeline.observability.tracing import log_fetch_result, log_retry, span

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class FetchResponse:
    """Raw outcome of a successful fetch."""

    url: str
    status_code: int
    headers: Dict[str, str]
    text: str
    attempts: int
    elapsed_ms: int
    fetched_at: datetime

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").split(";")[0].strip().lower()

    def json(self) -> Any:
        return orjson.loads(self.text)


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Return the delay in seconds named by a ``Retry-After`` header."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        moment = dateparser.parse(value)
    except (ValueError, OverflowError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (moment - now).total_seconds())


class FetchClient:
    """Performs one logical fetch, retrying transient failures.

    The rate limiter is acquired before every attempt, retries included, and
    each attempt presents the next user agent from the pool. A 429
    ``Retry-After`` hint is slept exactly; one above ``max_retry_after``
    ends the call with a ``TransientFetchError`` carrying the hint.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        user_agents: Optional[UserAgentPool] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_retry_after: float = 300.0,
        jitter: float = 0.2,
        metrics: Optional[MetricsRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._client = client
        self._limiter = limiter
        self._agents = user_agents or UserAgentPool()
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_retry_after = max_retry_after
        self._jitter = jitter
        self._metrics = metrics or MetricsRegistry()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _delay(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return retry_after
        delay = self._base_delay * (2 ** (attempt - 1))
        delay *= self._rng.uniform(1.0 - self._jitter, 1.0 + self._jitter)
        return min(delay, self._max_delay)

    async def fetch(self, request: FetchRequest) -> FetchResponse:
        """Fetch the request, raising Transient/PermanentFetchError on failure."""
        for attempt in range(1, self._max_attempts + 1):
            self._metrics.observe_wait(await self._limiter.acquire(request.target))
            headers = {**request.headers, "User-Agent": self._agents.next()}
            self._metrics.incr("fetch_attempts")
            start = time.perf_counter()
            try:
                with span(name="fetch", url=request.url):
                    response = await self._client.request(
                        request.method,
                        request.url,
                        params=request.params or None,
                        headers=headers,
                        timeout=self._timeout,
                    )
            except (httpx.UnsupportedProtocol, httpx.DecodingError, httpx.TooManyRedirects) as exc:
                raise PermanentFetchError(f"{type(exc).__name__}: {exc}", url=request.url) from exc
            except httpx.TransportError as exc:
                error = TransientFetchError(
                    f"{type(exc).__name__}: {exc}",
                    url=request.url,
                    attempts=attempt,
                )
            else:
                elapsed_ms = int((time.perf_counter() - start) * 1000)
                status = response.status_code
                self._metrics.observe_status(status)
                log_fetch_result(
                    url=str(response.url),
                    status=status,
                    bytes_read=len(response.content),
                    elapsed_ms=elapsed_ms,
                )
                if status == httpx.codes.TOO_MANY_REQUESTS or status >= 500:
                    retry_after = None
                    if status == httpx.codes.TOO_MANY_REQUESTS:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    error = TransientFetchError(
                        f"HTTP {status}",
                        url=str(response.url),
                        status_code=status,
                        attempts=attempt,
                        retry_after=retry_after,
                    )
                elif status >= 400:
                    raise PermanentFetchError(f"HTTP {status}", url=str(response.url), status_code=status)
                else:
                    return FetchResponse(
                        url=str(response.url),
                        status_code=status,
                        headers={key.lower(): value for key, value in response.headers.items()},
                        text=response.text,
                        attempts=attempt,
                        elapsed_ms=elapsed_ms,
                        fetched_at=datetime.now(timezone.utc),
                    )

            # longer hints are rescheduled through the queue
            too_long = error.retry_after is not None and error.retry_after > self._max_retry_after
            if attempt == self._max_attempts or too_long:
                LOGGER.warning("fetch_exhausted", url=request.url, attempts=attempt, reason=str(error))
                raise error
            delay = self._delay(attempt, error.retry_after)
            self._metrics.incr("retries")
            log_retry(attempt=attempt, url=request.url, reason=str(error), delay=delay)
            await self._sleep(delay)
