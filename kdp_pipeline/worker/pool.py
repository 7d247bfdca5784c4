"""Concurrent workers draining the extraction queue."""
from __future__ import annotations

import asyncio
import inspect
import os
import socket
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

import structlog

from kdp_pipeline.errors import NotFound, PermanentFetchError, StorageError, TransientFetchError
from kdp_pipeline.fetch.fetcher import FetchResponse
from kdp_pipeline.fetch.requests import FetchRequest, build_request
from kdp_pipeline.observability.metrics import MetricsRegistry
from kdp_pipeline.observability.tracing import clear_context, set_context
from kdp_pipeline.orchestrator.jobs import Job, JobKind, JobStatus
from kdp_pipeline.orchestrator.queue import ExtractionQueue
from kdp_pipeline.storage.cache import CacheStore
from kdp_pipeline.worker.extract import Extractor, default_extractor

LOGGER = structlog.get_logger(__name__)

JobListener = Callable[[Job], Optional[Awaitable[None]]]


class Fetcher(Protocol):
    async def fetch(self, request: FetchRequest) -> FetchResponse: ...


class WorkerState(str, Enum):
    IDLE = "idle"
    CLAIMED = "claimed"
    FETCHING = "fetching"
    CACHING = "caching"
    ERRORING = "erroring"
    STOPPED = "stopped"


class Worker:
    """Runs the claim, cache check, fetch and record cycle for one consumer."""

    def __init__(
        self,
        worker_id: str,
        *,
        queue: ExtractionQueue,
        cache: CacheStore,
        fetcher: Fetcher,
        cache_ttl: Callable[[JobKind], float],
        extractor: Extractor = default_extractor,
        poll_interval: float = 1.0,
        metrics: Optional[MetricsRegistry] = None,
        listeners: Optional[List[JobListener]] = None,
    ) -> None:
        self.worker_id = worker_id
        self.state = WorkerState.IDLE
        self._queue = queue
        self._cache = cache
        self._fetcher = fetcher
        self._cache_ttl = cache_ttl
        self._extractor = extractor
        self._poll_interval = poll_interval
        self._metrics = metrics or MetricsRegistry()
        self._listeners = listeners if listeners is not None else []

    async def run(self, stop: asyncio.Event, *, drain: bool = False) -> None:
        """Loop until ``stop`` is set, or until the queue is empty when draining."""
        while not stop.is_set():
            job = await self.run_once()
            if job is not None:
                continue
            if drain:
                return
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Optional[Job]:
        """Claim and process one job; return the claimed job or None when idle."""
        self.state = WorkerState.IDLE
        job = await self._queue.claim_next(self.worker_id)
        if job is None:
            return None
        self._metrics.incr("jobs_claimed")
        set_context(worker_id=self.worker_id, job_id=job.job_id, kind=job.kind.value)
        try:
            await self._process(job)
        finally:
            clear_context()
            self.state = WorkerState.IDLE
        return job

    async def _process(self, job: Job) -> None:
        self.state = WorkerState.CLAIMED
        cached = await self._cache.get(job.cache_key)
        if cached is not None:
            self._metrics.incr("cache_hits")
            LOGGER.info("cache_hit", cache_key=job.cache_key)
            await self._finish(job, cached)
            return
        self._metrics.incr("cache_misses")

        self.state = WorkerState.FETCHING
        try:
            response = await self._fetcher.fetch(build_request(job))
            result = self._extractor(job, response)
        except TransientFetchError as exc:
            await self._error(job, exc, retryable=True)
            return
        except PermanentFetchError as exc:
            await self._error(job, exc, retryable=False)
            return
        except StorageError:
            raise
        except Exception as exc:
            LOGGER.exception("job_crashed")
            await self._error(job, exc, retryable=False)
            return

        self.state = WorkerState.CACHING
        await self._cache.put(job.cache_key, result, self._cache_ttl(job.kind))
        await self._finish(job, result)

    async def _finish(self, job: Job, result: Any) -> None:
        try:
            status = await self._queue.complete(job.job_id, result, worker_id=self.worker_id)
        except NotFound as exc:
            LOGGER.warning("job_ownership_lost", reason=str(exc))
            return
        self._metrics.incr("jobs_completed" if status is JobStatus.COMPLETED else "jobs_cancelled")
        await self._notify(job.job_id)

    async def _error(self, job: Job, exc: Exception, *, retryable: bool) -> None:
        self.state = WorkerState.ERRORING
        message = f"{type(exc).__name__}: {exc}"
        try:
            status = await self._queue.fail(
                job.job_id,
                message,
                retryable,
                worker_id=self.worker_id,
                retry_after=getattr(exc, "retry_after", None),
            )
        except NotFound as lost:
            LOGGER.warning("job_ownership_lost", reason=str(lost))
            return
        if status is JobStatus.PENDING:
            self._metrics.incr("jobs_retried")
            return
        self._metrics.incr("jobs_failed" if status is JobStatus.FAILED else "jobs_cancelled")
        await self._notify(job.job_id)

    async def _notify(self, job_id: str) -> None:
        if not self._listeners:
            return
        job = await self._queue.get(job_id)
        for listener in self._listeners:
            try:
                outcome = listener(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                LOGGER.exception("listener_failed", listener=getattr(listener, "__name__", repr(listener)))


class WorkerPool:
    """A fixed number of workers sharing one queue, cache and fetcher.

    A storage failure in any worker stops every worker from claiming more
    work and is reported through ``health()``.
    """

    def __init__(
        self,
        *,
        queue: ExtractionQueue,
        cache: CacheStore,
        fetcher: Fetcher,
        cache_ttl: Callable[[JobKind], float],
        size: int = 4,
        poll_interval: float = 1.0,
        extractor: Extractor = default_extractor,
        metrics: Optional[MetricsRegistry] = None,
        listeners: Iterable[JobListener] = (),
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.metrics = metrics or MetricsRegistry()
        self._listeners: List[JobListener] = list(listeners)
        self._stop = asyncio.Event()
        self.error: Optional[BaseException] = None
        prefix = f"{socket.gethostname()}-{os.getpid()}"
        self.workers = [
            Worker(
                f"{prefix}-{index}",
                queue=queue,
                cache=cache,
                fetcher=fetcher,
                cache_ttl=cache_ttl,
                extractor=extractor,
                poll_interval=poll_interval,
                metrics=self.metrics,
                listeners=self._listeners,
            )
            for index in range(size)
        ]

    @property
    def healthy(self) -> bool:
        return self.error is None

    def add_listener(self, listener: JobListener) -> None:
        """Register a callable invoked with the job after each terminal transition."""
        self._listeners.append(listener)

    def health(self) -> Dict[str, object]:
        return {
            "healthy": self.healthy,
            "error": str(self.error) if self.error is not None else None,
            "workers": {worker.worker_id: worker.state.value for worker in self.workers},
        }

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Run every worker until ``stop()`` is called or storage fails."""
        await self._run_all(drain=False)

    async def drain(self) -> None:
        """Run until no claimable job remains."""
        await self._run_all(drain=True)

    async def _run_all(self, *, drain: bool) -> None:
        if not self.healthy:
            raise StorageError(f"pool halted: {self.error}")
        self._stop.clear()
        LOGGER.info("pool_started", size=len(self.workers), drain=drain)
        await asyncio.gather(*(self._supervise(worker, drain) for worker in self.workers))
        LOGGER.info("pool_stopped", healthy=self.healthy)

    async def _supervise(self, worker: Worker, drain: bool) -> None:
        try:
            await worker.run(self._stop, drain=drain)
        except StorageError as exc:
            if self.error is None:
                self.error = exc
            LOGGER.error("pool_halted", worker_id=worker.worker_id, error=str(exc))
            self._stop.set()
        finally:
            worker.state = WorkerState.STOPPED
