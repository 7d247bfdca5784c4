import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from kdp_pipeline.errors import PermanentFetchError, TransientFetchError
from kdp_pipeline.fetch.fetcher import FetchClient, parse_retry_after
from kdp_pipeline.fetch.ratelimit import RateLimiter, RatePolicy
from kdp_pipeline.fetch.requests import FetchRequest
from kdp_pipeline.fetch.session import UserAgentPool
from kdp_pipeline.observability.metrics import MetricsRegistry


class CountingLimiter(RateLimiter):
    def __init__(self):
        super().__init__(default=RatePolicy(max_requests=1000, window=1))
        self.targets = []

    async def acquire(self, target):
        self.targets.append(target)
        return await super().acquire(target)


class SequenceHandler:
    def __init__(self, responses):
        self._responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        outcome = self._responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _request():
    return FetchRequest(target="www.amazon.com", url="https://www.amazon.com/s", params={"k": "cookbook"})


def _run_fetch(handler, *, max_attempts=3, agents=None):
    sleeps = []
    limiter = CountingLimiter()
    metrics = MetricsRegistry()

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = FetchClient(
                client=client,
                limiter=limiter,
                user_agents=UserAgentPool(agents or ["agent-a", "agent-b"]),
                max_attempts=max_attempts,
                base_delay=1.0,
                jitter=0.0,
                metrics=metrics,
                sleep=fake_sleep,
            )
            return await fetcher.fetch(_request())

    return _run, sleeps, limiter, metrics


def test_success_returns_raw_response():
    handler = SequenceHandler([
        httpx.Response(200, text="<html>ok</html>", headers={"Content-Type": "text/html; charset=utf-8"}),
    ])
    run, sleeps, limiter, metrics = _run_fetch(handler)
    response = asyncio.run(run())
    assert response.status_code == 200
    assert response.text == "<html>ok</html>"
    assert response.content_type == "text/html"
    assert response.attempts == 1
    assert handler.requests[0].url.params["k"] == "cookbook"
    assert sleeps == []
    assert limiter.targets == ["www.amazon.com"]
    assert metrics.get("http_2xx") == 1


def test_transient_errors_are_retried_with_backoff():
    handler = SequenceHandler([
        httpx.Response(503),
        httpx.ConnectError("connection reset"),
        httpx.Response(200, json={"ok": True}),
    ])
    run, sleeps, limiter, metrics = _run_fetch(handler)
    response = asyncio.run(run())
    assert response.json() == {"ok": True}
    assert response.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert len(limiter.targets) == 3
    assert metrics.get("retries") == 2
    agents = [request.headers["User-Agent"] for request in handler.requests]
    assert agents == ["agent-a", "agent-b", "agent-a"]


def test_always_transient_stops_after_max_attempts():
    handler = SequenceHandler([httpx.Response(500) for _ in range(10)])
    run, sleeps, limiter, _ = _run_fetch(handler, max_attempts=4)
    with pytest.raises(TransientFetchError) as info:
        asyncio.run(run())
    assert info.value.attempts == 4
    assert info.value.status_code == 500
    assert len(handler.requests) == 4
    assert len(limiter.targets) == 4
    assert len(sleeps) == 3


def test_client_errors_are_not_retried():
    handler = SequenceHandler([httpx.Response(404), httpx.Response(200)])
    run, sleeps, _, metrics = _run_fetch(handler)
    with pytest.raises(PermanentFetchError) as info:
        asyncio.run(run())
    assert info.value.status_code == 404
    assert len(handler.requests) == 1
    assert sleeps == []
    assert metrics.get("http_4xx") == 1


def test_too_many_requests_honours_retry_after():
    handler = SequenceHandler([
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, text="fine"),
    ])
    run, sleeps, _, _ = _run_fetch(handler)
    response = asyncio.run(run())
    assert response.text == "fine"
    assert sleeps == [7.0]


def test_retry_after_beyond_max_delay_is_slept_in_full():
    handler = SequenceHandler([
        httpx.Response(429, headers={"Retry-After": "120"}),
        httpx.Response(200, text="fine"),
    ])
    run, sleeps, _, _ = _run_fetch(handler)
    assert asyncio.run(run()).text == "fine"
    assert sleeps == [120.0]


def test_retry_after_above_ceiling_is_handed_back():
    handler = SequenceHandler([
        httpx.Response(429, headers={"Retry-After": "900"}),
        httpx.Response(200, text="unused"),
    ])
    run, sleeps, _, _ = _run_fetch(handler)
    with pytest.raises(TransientFetchError) as info:
        asyncio.run(run())
    assert info.value.retry_after == 900.0
    assert info.value.status_code == 429
    assert len(handler.requests) == 1
    assert sleeps == []


def test_timeouts_are_transient():
    handler = SequenceHandler([httpx.ReadTimeout("slow"), httpx.ReadTimeout("slow")])
    run, _, _, _ = _run_fetch(handler, max_attempts=2)
    with pytest.raises(TransientFetchError) as info:
        asyncio.run(run())
    assert "ReadTimeout" in str(info.value)


def test_parse_retry_after_forms():
    now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    later = (now + timedelta(seconds=90)).strftime("%a, %d %b %Y %H:%M:%S GMT")
    assert parse_retry_after("120") == 120.0
    assert parse_retry_after(later, now=now) == pytest.approx(90.0)
    assert parse_retry_after("Mon, 01 Jan 2001 00:00:00 GMT", now=now) == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
