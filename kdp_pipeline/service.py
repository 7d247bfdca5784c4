"""Entry surface used by collaborators to submit, poll and cancel jobs."""
from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx
import structlog

from kdp_pipeline.fetch.fetcher import FetchClient
from kdp_pipeline.fetch.ratelimit import RateLimiter
from kdp_pipeline.fetch.session import UserAgentPool, create_http_client
from kdp_pipeline.observability.metrics import MetricsRegistry
from kdp_pipeline.orchestrator.jobs import JobKind, JobStatus
from kdp_pipeline.orchestrator.queue import ExtractionQueue
from kdp_pipeline.settings import PipelineSettings
from kdp_pipeline.storage.cache import CacheStore
from kdp_pipeline.storage.database import Database
from kdp_pipeline.worker.extract import Extractor, default_extractor
from kdp_pipeline.worker.pool import Fetcher, JobListener, WorkerPool

LOGGER = structlog.get_logger(__name__)


class Pipeline:
    """Wires the queue, cache and worker pool behind three calls."""

    def __init__(
        self,
        *,
        queue: ExtractionQueue,
        cache: CacheStore,
        pool: WorkerPool,
        settings: Optional[PipelineSettings] = None,
    ) -> None:
        self.queue = queue
        self.cache = cache
        self.pool = pool
        self.settings = settings or PipelineSettings()

    @property
    def metrics(self) -> MetricsRegistry:
        return self.pool.metrics

    async def submit_job(self, kind: JobKind | str, payload: Mapping[str, Any], priority: int = 0) -> str:
        return await self.queue.enqueue(kind, payload, priority)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Return ``{job_id, status, result?, error?}``; raises NotFound."""
        job = await self.queue.get(job_id)
        status: Dict[str, Any] = {"job_id": job.job_id, "status": job.status.value}
        if job.status is JobStatus.COMPLETED:
            status["result"] = job.result
        elif job.last_error:
            status["error"] = job.last_error
        return status

    async def cancel_job(self, job_id: str) -> bool:
        return await self.queue.cancel(job_id)

    def on_terminal(self, listener: JobListener) -> None:
        """Call ``listener`` with each job that reaches a terminal status."""
        self.pool.add_listener(listener)

    def health(self) -> Dict[str, object]:
        return self.pool.health()

    async def maintain(self) -> Dict[str, int]:
        """Reclaim stale jobs and drop expired cache rows."""
        requeued = await self.queue.requeue_stale(self.settings.workers.stale_timeout_seconds)
        purged = await self.cache.purge_expired()
        self.metrics.incr("stale_requeued", requeued)
        return {"requeued": requeued, "purged": purged}


def build_queue(settings: PipelineSettings, database: Database, cache: CacheStore) -> ExtractionQueue:
    retry = settings.retry
    return ExtractionQueue(
        database,
        cache=cache,
        max_retries=retry.max_retries,
        base_delay=retry.base_delay_seconds,
        max_delay=retry.max_delay_seconds,
        jitter=retry.jitter,
    )


@contextlib.asynccontextmanager
async def open_pipeline(
    settings: PipelineSettings,
    *,
    fetcher: Optional[Fetcher] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    extractor: Extractor = default_extractor,
    metrics: Optional[MetricsRegistry] = None,
) -> AsyncIterator[Pipeline]:
    """Construct every component from settings for the duration of the context.

    ``fetcher`` replaces the HTTP fetch client entirely; ``transport`` keeps
    the real client but swaps its network layer.
    """
    metrics = metrics or MetricsRegistry()
    database = Database(settings.storage.database_path)
    cache = CacheStore(database)
    queue = build_queue(settings, database, cache)
    limiter = RateLimiter(
        default=settings.default_rate_policy(),
        overrides=settings.rate_policy_overrides(),
    )
    async with create_http_client(
        timeout=settings.fetch.timeout_seconds,
        max_connections=settings.fetch.max_connections,
        transport=transport,
    ) as client:
        if fetcher is None:
            fetcher = FetchClient(
                client=client,
                limiter=limiter,
                user_agents=UserAgentPool(settings.fetch.user_agents),
                timeout=settings.fetch.timeout_seconds,
                max_attempts=settings.fetch.max_attempts,
                base_delay=settings.fetch.base_delay_seconds,
                max_delay=settings.fetch.max_delay_seconds,
                max_retry_after=settings.fetch.max_retry_after_seconds,
                jitter=settings.retry.jitter,
                metrics=metrics,
            )
        pool = WorkerPool(
            queue=queue,
            cache=cache,
            fetcher=fetcher,
            cache_ttl=settings.cache.ttl_for,
            size=settings.workers.pool_size,
            poll_interval=settings.workers.poll_interval_seconds,
            extractor=extractor,
            metrics=metrics,
        )
        LOGGER.info("pipeline_opened", database=str(settings.storage.database_path))
        yield Pipeline(queue=queue, cache=cache, pool=pool, settings=settings)
