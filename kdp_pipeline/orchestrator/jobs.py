"""Definitions for extraction jobs and their lifecycle."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobKind(str, Enum):
    """Kinds of extraction work accepted by the queue."""

    KEYWORD_LOOKUP = "keyword-lookup"
    PRODUCT_LOOKUP = "product-lookup"
    CATEGORY_LOOKUP = "category-lookup"
    REVIEW_LOOKUP = "review-lookup"


class JobStatus(str, Enum):
    """Job execution status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class Job:
    """A queued unit of extraction work as stored in the jobs table."""

    job_id: str
    kind: JobKind
    payload: Dict[str, Any]
    cache_key: str
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    retry_count: int = 0
    attempts: int = 0
    max_retries: int = 3
    scheduled_at: float = 0.0
    created_at: float = 0.0
    claimed_at: Optional[float] = None
    claimed_by: Optional[str] = None
    completed_at: Optional[float] = None
    last_error: Optional[str] = None
    result: Optional[Any] = None
    cancel_requested: bool = False

    @property
    def marketplace(self) -> str:
        return str(self.payload.get("marketplace", "US"))

    def to_dict(self) -> Dict[str, Any]:
        """Render the job for JSON output."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "status": self.status.value,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "cache_key": self.cache_key,
            "scheduled_at": _iso(self.scheduled_at),
            "created_at": _iso(self.created_at),
            "claimed_at": _iso(self.claimed_at),
            "claimed_by": self.claimed_by,
            "completed_at": _iso(self.completed_at),
            "last_error": self.last_error,
            "cancel_requested": self.cancel_requested,
        }
