"""Cron-driven recurring submissions and queue maintenance on asyncio."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

import structlog
from croniter import croniter

from kdp_pipeline.errors import InvalidPayload
from kdp_pipeline.settings import ScheduledSubmission

if TYPE_CHECKING:
    from kdp_pipeline.service import Pipeline

LOGGER = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_fire(cron: str, after: datetime) -> datetime:
    return croniter(cron, after).get_next(datetime)


async def run_schedule_loop(
    pipeline: "Pipeline",
    *,
    submissions: Optional[Sequence[ScheduledSubmission]] = None,
    interval_seconds: Optional[float] = None,
    ticks: Optional[int] = None,
    now: Callable[[], datetime] = _utcnow,
) -> List[str]:
    """Submit scheduled jobs when due and run maintenance every tick.

    Every submission fires on the first tick, then on its cron schedule.
    Returns the job ids submitted, mostly for tests and the CLI summary.
    """
    scheduler = pipeline.settings.scheduler
    if submissions is None:
        submissions = scheduler.jobs
    if interval_seconds is None:
        interval_seconds = scheduler.interval_seconds
    due = [now() for _ in submissions]
    submitted: List[str] = []
    tick = 0
    while ticks is None or tick < ticks:
        current = now()
        for index, submission in enumerate(submissions):
            if current < due[index]:
                continue
            try:
                job_id = await pipeline.submit_job(submission.kind, submission.payload, submission.priority)
            except InvalidPayload as exc:
                LOGGER.error("scheduled_submission_rejected", kind=submission.kind.value, error=str(exc))
            else:
                submitted.append(job_id)
            due[index] = next_fire(submission.cron, current)
        maintenance = await pipeline.maintain()
        LOGGER.info("schedule_tick", tick=tick, submitted=len(submitted), **maintenance)
        tick += 1
        if ticks is None or tick < ticks:
            await asyncio.sleep(interval_seconds)
    return submitted
