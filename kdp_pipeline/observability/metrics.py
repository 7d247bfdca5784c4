"""In-process counters for workers, fetches and maintenance."""
from __future__ import annotations

import contextlib
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterator

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

JOB_COUNTERS = (
    "jobs_claimed",
    "jobs_completed",
    "jobs_failed",
    "jobs_retried",
    "jobs_cancelled",
    "stale_requeued",
)
CACHE_COUNTERS = ("cache_hits", "cache_misses")
FETCH_COUNTERS = (
    "fetch_attempts",
    "http_2xx",
    "http_3xx",
    "http_4xx",
    "http_5xx",
    "retries",
    "rate_limit_waits",
    "rate_limit_wait_ms",
)


class MetricsRegistry:
    """Counters shared by every worker of one process.

    Workers run on a single event loop, so plain integer increments are safe.
    """

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        for name in (*JOB_COUNTERS, *CACHE_COUNTERS, *FETCH_COUNTERS, "run_duration_ms"):
            self._counters[name] = 0

    def incr(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def observe_status(self, status_code: int) -> None:
        """Count a response under its ``http_Nxx`` class."""
        self.incr(f"http_{status_code // 100}xx")

    def observe_wait(self, seconds: float) -> None:
        """Record time a fetch spent blocked on the rate limiter."""
        if seconds <= 0:
            return
        self.incr("rate_limit_waits")
        self.incr("rate_limit_wait_ms", int(seconds * 1000))

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def cache_hit_ratio(self) -> float:
        lookups = self.get("cache_hits") + self.get("cache_misses")
        return self.get("cache_hits") / lookups if lookups else 0.0

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write the counters of one ``work`` run as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "counters": self.snapshot(),
            "cache_hit_ratio": round(self.cache_hit_ratio(), 4),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Add the elapsed milliseconds of the block to ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.incr(metric_name, elapsed_ms)
        LOGGER.info("timer_stop", metric=metric_name, duration_ms=elapsed_ms)
