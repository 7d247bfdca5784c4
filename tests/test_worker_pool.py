import asyncio
from datetime import datetime, timezone

import pytest

from kdp_pipeline.errors import PermanentFetchError, StorageError, TransientFetchError
from kdp_pipeline.fetch.fetcher import FetchResponse
from kdp_pipeline.orchestrator.jobs import JobStatus
from kdp_pipeline.orchestrator.queue import ExtractionQueue
from kdp_pipeline.storage.cache import CacheStore
from kdp_pipeline.storage.database import Database
from kdp_pipeline.worker.pool import Worker, WorkerPool, WorkerState


def _response(text, content_type="application/json"):
    return FetchResponse(
        url="https://www.amazon.com/s?k=cookbook",
        status_code=200,
        headers={"content-type": content_type},
        text=text,
        attempts=1,
        elapsed_ms=3,
        fetched_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


class StubFetcher:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.requests = []

    async def fetch(self, request):
        self.requests.append(request)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture()
def stores(tmp_path):
    database = Database(tmp_path / "pipeline.db")
    cache = CacheStore(database)
    queue = ExtractionQueue(database, cache=cache, max_retries=2, base_delay=0.0)
    return queue, cache


def _worker(queue, cache, fetcher, listeners=None):
    return Worker(
        "worker-test",
        queue=queue,
        cache=cache,
        fetcher=fetcher,
        cache_ttl=lambda kind: 3600.0,
        poll_interval=0.01,
        listeners=listeners,
    )


def test_successful_cycle_caches_and_completes(stores):
    queue, cache = stores
    fetcher = StubFetcher([_response('{"items": ["a"]}')])
    worker = _worker(queue, cache, fetcher)

    async def _run():
        job_id = await queue.enqueue("keyword-lookup", {"query": "cookbook"})
        claimed = await worker.run_once()
        assert claimed.job_id == job_id
        job = await queue.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.result == {"items": ["a"]}
        assert await cache.get(job.cache_key) == {"items": ["a"]}
        assert fetcher.requests[0].target == "www.amazon.com"
        assert fetcher.requests[0].params["k"] == "cookbook"
        assert worker.state is WorkerState.IDLE
        assert await worker.run_once() is None

    asyncio.run(_run())


def test_cache_hit_skips_fetch(stores):
    queue, cache = stores
    fetcher = StubFetcher([PermanentFetchError("should not be called")])
    worker = _worker(queue, cache, fetcher)

    async def _run():
        job_id = await queue.enqueue("product-lookup", {"asin": "B0C1234567"})
        job = await queue.get(job_id)
        await cache.put(job.cache_key, {"title": "cached"}, ttl=60)
        await worker.run_once()
        done = await queue.get(job_id)
        assert done.status is JobStatus.COMPLETED
        assert done.result == {"title": "cached"}
        assert fetcher.requests == []

    asyncio.run(_run())


def test_always_transient_fails_after_budget(stores):
    queue, cache = stores
    fetcher = StubFetcher([TransientFetchError("HTTP 503", status_code=503, attempts=3)])
    worker = _worker(queue, cache, fetcher)

    async def _run():
        job_id = await queue.enqueue("keyword-lookup", {"query": "cookbook"})
        cycles = 0
        while await worker.run_once() is not None:
            cycles += 1
        job = await queue.get(job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == queue.max_retries + 1
        assert cycles == job.attempts
        assert job.last_error.startswith("PermanentFailure: TransientFetchError")

    asyncio.run(_run())


def test_permanent_error_fails_without_retry(stores):
    queue, cache = stores
    fetcher = StubFetcher([PermanentFetchError("HTTP 404", status_code=404)])
    worker = _worker(queue, cache, fetcher)

    async def _run():
        job_id = await queue.enqueue("category-lookup", {"node_id": "6"})
        await worker.run_once()
        job = await queue.get(job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == 1
        assert job.last_error == "PermanentFetchError: HTTP 404"

    asyncio.run(_run())


def test_malformed_json_is_permanent(stores):
    queue, cache = stores
    worker = _worker(queue, cache, StubFetcher([_response("{not json")]))

    async def _run():
        job_id = await queue.enqueue("keyword-lookup", {"query": "cookbook"})
        await worker.run_once()
        job = await queue.get(job_id)
        assert job.status is JobStatus.FAILED
        assert "malformed JSON" in job.last_error

    asyncio.run(_run())


def test_cancel_during_fetch_discards_result(stores):
    queue, cache = stores

    class CancellingFetcher:
        async def fetch(self, request):
            for job_id in self.job_ids:
                assert await queue.cancel(job_id) is True
            return _response('{"items": []}')

    fetcher = CancellingFetcher()
    terminal = []
    worker = _worker(queue, cache, fetcher, listeners=[terminal.append])

    async def _run():
        job_id = await queue.enqueue("keyword-lookup", {"query": "cookbook"})
        fetcher.job_ids = [job_id]
        await worker.run_once()
        job = await queue.get(job_id)
        assert job.status is JobStatus.CANCELLED
        assert job.result is None
        assert [notified.status for notified in terminal] == [JobStatus.CANCELLED]

    asyncio.run(_run())


def test_unexpected_extractor_error_does_not_kill_worker(stores):
    queue, cache = stores

    def broken_extractor(job, response):
        raise KeyError("price")

    worker = Worker(
        "worker-test",
        queue=queue,
        cache=cache,
        fetcher=StubFetcher([_response("{}")]),
        cache_ttl=lambda kind: 60.0,
        extractor=broken_extractor,
    )

    async def _run():
        first = await queue.enqueue("keyword-lookup", {"query": "one"})
        second = await queue.enqueue("keyword-lookup", {"query": "two"})
        await worker.run_once()
        await worker.run_once()
        assert (await queue.get(first)).status is JobStatus.FAILED
        assert (await queue.get(second)).status is JobStatus.FAILED

    asyncio.run(_run())


def test_pool_drains_queue_and_notifies(stores):
    queue, cache = stores
    fetcher = StubFetcher([_response('{"ok": true}')])
    finished = []

    async def on_terminal(job):
        finished.append(job.job_id)

    pool = WorkerPool(
        queue=queue,
        cache=cache,
        fetcher=fetcher,
        cache_ttl=lambda kind: 60.0,
        size=3,
        poll_interval=0.01,
        listeners=[on_terminal],
    )

    async def _run():
        job_ids = [await queue.enqueue("keyword-lookup", {"query": f"topic {n}"}) for n in range(9)]
        await pool.drain()
        stats = await queue.stats()
        assert stats["completed"] == 9
        assert sorted(finished) == sorted(job_ids)

    asyncio.run(_run())
    assert pool.health()["healthy"] is True
    assert pool.metrics.get("jobs_completed") == 9
    assert set(pool.health()["workers"].values()) == {"stopped"}


def test_pool_halts_on_storage_failure(stores):
    queue, cache = stores

    class BrokenQueue:
        async def claim_next(self, worker_id):
            raise StorageError("database is locked")

    pool = WorkerPool(
        queue=BrokenQueue(),
        cache=cache,
        fetcher=StubFetcher([_response("{}")]),
        cache_ttl=lambda kind: 60.0,
        size=2,
        poll_interval=0.01,
    )

    async def _run():
        await asyncio.wait_for(pool.run(), timeout=5)
        with pytest.raises(StorageError):
            await pool.run()

    asyncio.run(_run())
    health = pool.health()
    assert health["healthy"] is False
    assert "database is locked" in health["error"]


def test_pool_stop_ends_run(stores):
    queue, cache = stores
    pool = WorkerPool(
        queue=queue,
        cache=cache,
        fetcher=StubFetcher([_response("{}")]),
        cache_ttl=lambda kind: 60.0,
        size=2,
        poll_interval=0.01,
    )

    async def _run():
        task = asyncio.create_task(pool.run())
        await asyncio.sleep(0.05)
        pool.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(_run())
    assert pool.healthy


def test_superseded_worker_leaves_new_owner_alone(stores):
    queue, cache = stores

    class StallingFetcher:
        reclaimed = None

        async def fetch(self, request):
            assert await queue.requeue_stale(-1) == 1
            self.reclaimed = await queue.claim_next("fresh-worker")
            raise TransientFetchError("HTTP 503", status_code=503)

    fetcher = StallingFetcher()
    worker = _worker(queue, cache, fetcher)

    async def _run():
        job_id = await queue.enqueue("keyword-lookup", {"query": "cookbook"})
        await worker.run_once()
        job = await queue.get(job_id)
        assert fetcher.reclaimed.job_id == job_id
        assert job.status is JobStatus.PROCESSING
        assert job.claimed_by == "fresh-worker"
        assert await queue.claim_next("third-worker") is None

    asyncio.run(_run())
