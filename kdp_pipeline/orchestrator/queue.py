"""Durable, priority-ordered extraction queue backed by SQLite."""
from __future__ import annotations

import asyncio
import random
import sqlite3
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

import orjson
import structlog

from kdp_pipeline.errors import NotFound
from kdp_pipeline.orchestrator.jobs import Job, JobKind, JobStatus
from kdp_pipeline.orchestrator.keys import cache_key
from kdp_pipeline.orchestrator.payloads import coerce_kind, normalise_payload
from kdp_pipeline.storage.cache import CacheStore
from kdp_pipeline.storage.database import Database

LOGGER = structlog.get_logger(__name__)

_CLAIM_SQL = """
SELECT job_id FROM jobs
WHERE status = 'pending' AND scheduled_at <= ?
ORDER BY priority DESC, scheduled_at ASC, job_id ASC
LIMIT 1
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    result = row["result_json"]
    return Job(
        job_id=row["job_id"],
        kind=JobKind(row["kind"]),
        payload=orjson.loads(row["payload_json"]),
        cache_key=row["cache_key"],
        status=JobStatus(row["status"]),
        priority=row["priority"],
        retry_count=row["retry_count"],
        attempts=row["attempts"],
        max_retries=row["max_retries"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        claimed_at=row["claimed_at"],
        claimed_by=row["claimed_by"],
        completed_at=row["completed_at"],
        last_error=row["last_error"],
        result=orjson.loads(result) if result is not None else None,
        cancel_requested=bool(row["cancel_requested"]),
    )


class ExtractionQueue:
    """Stores jobs durably and hands them out to workers one at a time.

    Claims run inside ``BEGIN IMMEDIATE`` transactions with a conditional
    ``pending -> processing`` update, so concurrent claimers (tasks, threads
    or separate processes sharing the database file) never receive the same
    job.
    """

    def __init__(
        self,
        database: Database,
        *,
        cache: Optional[CacheStore] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter: float = 0.2,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._db = database
        self._cache = cache
        self.max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._clock = clock
        self._rng = rng or random.Random()

    async def enqueue(self, kind: JobKind | str, payload: Mapping[str, Any], priority: int = 0) -> str:
        """Validate and insert a job, returning its identifier.

        A pending or processing job with the same cache key is reused. When
        the cache already holds a live value the job is stored as completed.
        """
        job_kind = coerce_kind(kind)
        normalised = normalise_payload(job_kind, payload)
        key = cache_key(job_kind, normalised)
        cached = await self._cache.get(key) if self._cache is not None else None
        job_id, created = await asyncio.to_thread(
            self._insert, job_kind, normalised, key, int(priority), cached
        )
        if created:
            LOGGER.info(
                "job_enqueued",
                job_id=job_id,
                kind=job_kind.value,
                priority=priority,
                from_cache=cached is not None,
            )
        else:
            LOGGER.info("job_deduplicated", job_id=job_id, cache_key=key)
        return job_id

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically move the best pending job to processing and return it."""
        return await asyncio.to_thread(self._claim, worker_id)

    async def complete(self, job_id: str, result: Any, *, worker_id: Optional[str] = None) -> JobStatus:
        """Mark a processing job completed; a cancel request discards the result.

        With ``worker_id`` the call is rejected with ``NotFound`` unless that
        worker holds the current claim.
        """
        return await asyncio.to_thread(self._complete, job_id, result, worker_id)

    async def fail(
        self,
        job_id: str,
        error: str,
        retryable: bool,
        *,
        worker_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> JobStatus:
        """Reschedule a processing job with backoff, or fail it for good.

        A ``retry_after`` hint delays the retry at least that many seconds.
        """
        return await asyncio.to_thread(self._fail, job_id, error, retryable, worker_id, retry_after)

    async def requeue_stale(self, timeout: float) -> int:
        """Return jobs processing for longer than ``timeout`` seconds to pending."""
        count = await asyncio.to_thread(self._requeue_stale, timeout)
        if count:
            LOGGER.warning("stale_jobs_requeued", count=count, timeout=timeout)
        return count

    async def get(self, job_id: str) -> Job:
        return await asyncio.to_thread(self._get, job_id)

    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending job or flag a processing one; False when too late."""
        return await asyncio.to_thread(self._cancel, job_id)

    async def stats(self) -> Dict[str, int]:
        """Return job counts per status."""
        return await asyncio.to_thread(self._stats)

    async def recent_failures(self, limit: int = 20) -> List[Job]:
        return await asyncio.to_thread(self._recent_failures, limit)

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before the next attempt: ``base * 2**retry_count`` jittered."""
        delay = self._base_delay * (2 ** retry_count)
        delay *= self._rng.uniform(1.0 - self._jitter, 1.0 + self._jitter)
        return min(delay, self._max_delay)

    def _insert(
        self,
        kind: JobKind,
        payload: Dict[str, Any],
        key: str,
        priority: int,
        cached: Optional[Any],
    ) -> tuple[str, bool]:
        now = self._clock()
        with self._db.transaction() as connection:
            existing = connection.execute(
                """
                SELECT job_id, priority FROM jobs
                WHERE cache_key = ? AND status IN ('pending', 'processing') AND cancel_requested = 0
                ORDER BY created_at LIMIT 1
                """,
                (key,),
            ).fetchone()
            if existing is not None:
                if priority > existing["priority"]:
                    connection.execute(
                        "UPDATE jobs SET priority = ? WHERE job_id = ?",
                        (priority, existing["job_id"]),
                    )
                return existing["job_id"], False

            job_id = uuid.uuid4().hex
            status = JobStatus.PENDING if cached is None else JobStatus.COMPLETED
            connection.execute(
                """
                INSERT INTO jobs (
                    job_id, kind, payload_json, cache_key, status, priority,
                    max_retries, scheduled_at, created_at, completed_at, result_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    kind.value,
                    orjson.dumps(payload).decode(),
                    key,
                    status.value,
                    priority,
                    self.max_retries,
                    now,
                    now,
                    now if cached is not None else None,
                    orjson.dumps(cached).decode() if cached is not None else None,
                ),
            )
        return job_id, True

    def _claim(self, worker_id: str) -> Optional[Job]:
        now = self._clock()
        with self._db.transaction() as connection:
            row = connection.execute(_CLAIM_SQL, (now,)).fetchone()
            if row is None:
                return None
            cursor = connection.execute(
                """
                UPDATE jobs
                SET status = 'processing', claimed_at = ?, claimed_by = ?, attempts = attempts + 1
                WHERE job_id = ? AND status = 'pending'
                """,
                (now, worker_id, row["job_id"]),
            )
            if cursor.rowcount != 1:
                return None
            claimed = connection.execute("SELECT * FROM jobs WHERE job_id = ?", (row["job_id"],)).fetchone()
        return _row_to_job(claimed)

    def _processing_row(
        self, connection: sqlite3.Connection, job_id: str, worker_id: Optional[str]
    ) -> sqlite3.Row:
        row = connection.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFound(f"unknown job {job_id}")
        if row["status"] != JobStatus.PROCESSING.value:
            raise NotFound(f"job {job_id} is {row['status']}, not processing")
        if worker_id is not None and row["claimed_by"] != worker_id:
            raise NotFound(f"job {job_id} is claimed by {row['claimed_by']}, not {worker_id}")
        return row

    def _complete(self, job_id: str, result: Any, worker_id: Optional[str]) -> JobStatus:
        now = self._clock()
        with self._db.transaction() as connection:
            row = self._processing_row(connection, job_id, worker_id)
            if row["cancel_requested"]:
                connection.execute(
                    "UPDATE jobs SET status = 'cancelled', completed_at = ? WHERE job_id = ?",
                    (now, job_id),
                )
                status = JobStatus.CANCELLED
            else:
                connection.execute(
                    """
                    UPDATE jobs SET status = 'completed', completed_at = ?, result_json = ?, last_error = NULL
                    WHERE job_id = ?
                    """,
                    (now, orjson.dumps(result).decode(), job_id),
                )
                status = JobStatus.COMPLETED
        LOGGER.info("job_finished", job_id=job_id, status=status.value)
        return status

    def _fail(
        self,
        job_id: str,
        error: str,
        retryable: bool,
        worker_id: Optional[str],
        retry_after: Optional[float],
    ) -> JobStatus:
        now = self._clock()
        with self._db.transaction() as connection:
            row = self._processing_row(connection, job_id, worker_id)
            retry_count = row["retry_count"]
            if row["cancel_requested"]:
                connection.execute(
                    "UPDATE jobs SET status = 'cancelled', completed_at = ?, last_error = ? WHERE job_id = ?",
                    (now, error, job_id),
                )
                return JobStatus.CANCELLED
            if retryable and retry_count < row["max_retries"]:
                delay = self.backoff_delay(retry_count)
                if retry_after is not None:
                    delay = max(delay, retry_after)
                connection.execute(
                    """
                    UPDATE jobs
                    SET status = 'pending', retry_count = retry_count + 1, scheduled_at = ?,
                        last_error = ?, claimed_at = NULL, claimed_by = NULL
                    WHERE job_id = ?
                    """,
                    (now + delay, error, job_id),
                )
                LOGGER.info("job_retry_scheduled", job_id=job_id, retry=retry_count + 1, delay=round(delay, 3))
                return JobStatus.PENDING
            reason = f"PermanentFailure: {error}" if retryable else error
            connection.execute(
                "UPDATE jobs SET status = 'failed', completed_at = ?, last_error = ? WHERE job_id = ?",
                (now, reason, job_id),
            )
        LOGGER.warning("job_failed", job_id=job_id, error=reason)
        return JobStatus.FAILED

    def _requeue_stale(self, timeout: float) -> int:
        now = self._clock()
        cutoff = now - timeout
        with self._db.transaction() as connection:
            rows = connection.execute(
                "SELECT job_id, retry_count, max_retries, cancel_requested FROM jobs "
                "WHERE status = 'processing' AND claimed_at < ?",
                (cutoff,),
            ).fetchall()
            for row in rows:
                if row["cancel_requested"]:
                    connection.execute(
                        "UPDATE jobs SET status = 'cancelled', completed_at = ? WHERE job_id = ?",
                        (now, row["job_id"]),
                    )
                elif row["retry_count"] < row["max_retries"]:
                    connection.execute(
                        """
                        UPDATE jobs
                        SET status = 'pending', retry_count = retry_count + 1, scheduled_at = ?,
                            last_error = 'stale: worker presumed lost', claimed_at = NULL, claimed_by = NULL
                        WHERE job_id = ?
                        """,
                        (now, row["job_id"]),
                    )
                else:
                    # retry budget spent: failed rather than pending again
                    connection.execute(
                        """
                        UPDATE jobs SET status = 'failed', completed_at = ?,
                            last_error = 'PermanentFailure: stale after retry budget spent'
                        WHERE job_id = ?
                        """,
                        (now, row["job_id"]),
                    )
        return len(rows)

    def _get(self, job_id: str) -> Job:
        with self._db.connect() as connection:
            row = connection.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFound(f"unknown job {job_id}")
        return _row_to_job(row)

    def _cancel(self, job_id: str) -> bool:
        now = self._clock()
        with self._db.transaction() as connection:
            row = connection.execute("SELECT status FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            if row is None:
                return False
            status = JobStatus(row["status"])
            if status.terminal:
                return False
            if status is JobStatus.PENDING:
                connection.execute(
                    "UPDATE jobs SET status = 'cancelled', completed_at = ? WHERE job_id = ?",
                    (now, job_id),
                )
            else:
                connection.execute("UPDATE jobs SET cancel_requested = 1 WHERE job_id = ?", (job_id,))
        LOGGER.info("job_cancel_requested", job_id=job_id, status=status.value)
        return True

    def _stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._db.connect() as connection:
            for row in connection.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"):
                counts[row["status"]] = row["total"]
        return counts

    def _recent_failures(self, limit: int) -> List[Job]:
        with self._db.connect() as connection:
            rows = connection.execute(
                "SELECT * FROM jobs WHERE status = 'failed' ORDER BY completed_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_job(row) for row in rows]
