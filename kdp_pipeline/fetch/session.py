"""HTTP client factory and rotating presentation identity."""
from __future__ import annotations

import contextlib
import itertools
import threading
from typing import AsyncIterator, Iterable, Optional

import httpx

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
)


class UserAgentPool:
    """Cycles through the configured user-agent strings, one per attempt."""

    def __init__(self, agents: Optional[Iterable[str]] = None) -> None:
        pool = tuple(agents or DEFAULT_USER_AGENTS)
        if not pool:
            raise ValueError("user-agent pool must not be empty")
        self._cycle = itertools.cycle(pool)
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            return next(self._cycle)


@contextlib.asynccontextmanager
async def create_http_client(
    *,
    timeout: float,
    max_connections: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield a configured ``httpx.AsyncClient`` for the duration of the context."""
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    headers = {"Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8"}
    async with httpx.AsyncClient(
        headers=headers,
        limits=limits,
        timeout=timeout,
        follow_redirects=True,
        transport=transport,
    ) as client:
        yield client
