import asyncio
from datetime import datetime, timedelta, timezone

from kdp_pipeline.orchestrator.schedule_loop import next_fire, run_schedule_loop
from kdp_pipeline.service import open_pipeline
from kdp_pipeline.settings import PipelineSettings, ScheduledSubmission


class StepClock:
    def __init__(self, start, step):
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current += self.step
        return value


class NeverFetcher:
    async def fetch(self, request):
        raise AssertionError("the schedule loop must not fetch")


def _settings(tmp_path, jobs):
    return PipelineSettings.model_validate({
        "storage": {"database_path": str(tmp_path / "pipeline.db")},
        "scheduler": {"jobs": jobs},
    })


def test_next_fire_follows_cron():
    start = datetime(2024, 5, 1, 5, 30, tzinfo=timezone.utc)
    assert next_fire("0 6 * * *", start) == datetime(2024, 5, 1, 6, 0, tzinfo=timezone.utc)


def test_submissions_fire_on_first_tick_then_on_schedule(tmp_path):
    settings = _settings(tmp_path, [
        {"kind": "keyword-lookup", "payload": {"query": "cookbook"}, "cron": "0 * * * *", "priority": 2},
        {"kind": "product-lookup", "payload": {"asin": "B0C1234567"}, "cron": "0 0 * * *"},
    ])
    clock = StepClock(datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc), timedelta(minutes=30))

    async def _run():
        async with open_pipeline(settings, fetcher=NeverFetcher()) as pipeline:
            submitted = await run_schedule_loop(pipeline, interval_seconds=0, ticks=3, now=clock)
            stats = await pipeline.queue.stats()
            return submitted, stats

    submitted, stats = asyncio.run(_run())
    assert len(submitted) == 3
    assert submitted[0] == submitted[2]
    assert stats["pending"] == 2


def test_invalid_scheduled_payload_is_skipped(tmp_path):
    settings = _settings(tmp_path, [])
    bad = ScheduledSubmission(kind="product-lookup", payload={"asin": "nope"})

    async def _run():
        async with open_pipeline(settings, fetcher=NeverFetcher()) as pipeline:
            return await run_schedule_loop(pipeline, submissions=[bad], interval_seconds=0, ticks=1)

    assert asyncio.run(_run()) == []


def test_tick_requeues_stale_jobs(tmp_path):
    settings = PipelineSettings.model_validate({
        "storage": {"database_path": str(tmp_path / "pipeline.db")},
        "workers": {"stale_timeout_seconds": 0.001},
    })

    async def _run():
        async with open_pipeline(settings, fetcher=NeverFetcher()) as pipeline:
            job_id = await pipeline.submit_job("keyword-lookup", {"query": "cookbook"})
            await pipeline.queue.claim_next("lost-worker")
            await asyncio.sleep(0.01)
            await run_schedule_loop(pipeline, submissions=[], interval_seconds=0, ticks=1)
            return await pipeline.get_job_status(job_id), pipeline.metrics.get("stale_requeued")

    status, requeued = asyncio.run(_run())
    assert status["status"] == "pending"
    assert requeued == 1
