"""Exception taxonomy shared by the queue, cache, fetch and worker layers."""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class InvalidPayload(PipelineError):
    """Raised at submission when the payload does not fit the job kind."""


class NotFound(PipelineError):
    """Raised when a job id is unknown or the job is in the wrong state."""


class StorageError(PipelineError):
    """Raised when the backing SQLite store cannot be read or written."""


class FetchError(PipelineError):
    """Base class for fetch failures."""

    def __init__(self, message: str, *, url: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeouts, connection failures, 5xx and 429 responses."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 1,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)
        self.attempts = attempts
        self.retry_after = retry_after


class PermanentFetchError(FetchError):
    """4xx other than 429 and malformed responses; never retried."""
