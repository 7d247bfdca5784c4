"""Validated runtime configuration loaded from TOML."""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from croniter import croniter
from pydantic import BaseModel, Field, field_validator

from kdp_pipeline.fetch.ratelimit import RatePolicy
from kdp_pipeline.fetch.session import DEFAULT_USER_AGENTS
from kdp_pipeline.orchestrator.jobs import JobKind

CONFIG_ENV = "KDP_PIPELINE_CONFIG"
DATABASE_ENV = "KDP_PIPELINE_DB"
DEFAULT_CONFIG = Path("config/settings.toml")


class StorageSettings(BaseModel):
    database_path: Path = Path("data/pipeline.db")
    metrics_dir: Path = Path("data/metrics")


class FetchSettings(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    max_retry_after_seconds: float = Field(default=300.0, ge=0)
    max_connections: int = Field(default=10, gt=0)
    user_agents: List[str] = Field(default_factory=lambda: list(DEFAULT_USER_AGENTS), min_length=1)


class RateLimitSettings(BaseModel):
    max_requests: int = Field(default=10, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)
    policy: Literal["sliding", "fixed"] = "sliding"

    def to_policy(self) -> RatePolicy:
        return RatePolicy(max_requests=self.max_requests, window=self.window_seconds, kind=self.policy)


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=300.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, lt=1)


class CacheSettings(BaseModel):
    default_ttl_seconds: float = Field(default=86400.0, gt=0)
    ttl_seconds: Dict[JobKind, float] = Field(
        default_factory=lambda: {
            JobKind.KEYWORD_LOOKUP: 6 * 3600.0,
            JobKind.PRODUCT_LOOKUP: 24 * 3600.0,
            JobKind.CATEGORY_LOOKUP: 12 * 3600.0,
            JobKind.REVIEW_LOOKUP: 24 * 3600.0,
        }
    )

    def ttl_for(self, kind: JobKind) -> float:
        return self.ttl_seconds.get(kind, self.default_ttl_seconds)


class WorkerSettings(BaseModel):
    pool_size: int = Field(default=4, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    stale_timeout_seconds: float = Field(default=600.0, gt=0)


class ScheduledSubmission(BaseModel):
    """A recurring submission fired on a cron expression."""

    kind: JobKind
    payload: Dict[str, Any]
    cron: str = "0 */6 * * *"
    priority: int = 0

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value}")
        return value


class SchedulerSettings(BaseModel):
    interval_seconds: float = Field(default=60.0, gt=0)
    jobs: List[ScheduledSubmission] = Field(default_factory=list)


class PipelineSettings(BaseModel):
    """Top-level configuration for the extraction pipeline."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    rate_limits: Dict[str, RateLimitSettings] = Field(default_factory=lambda: {"default": RateLimitSettings()})
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    workers: WorkerSettings = Field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    @field_validator("rate_limits")
    @classmethod
    def _ensure_default(cls, value: Dict[str, RateLimitSettings]) -> Dict[str, RateLimitSettings]:
        value.setdefault("default", RateLimitSettings())
        return value

    def default_rate_policy(self) -> RatePolicy:
        return self.rate_limits["default"].to_policy()

    def rate_policy_overrides(self) -> Dict[str, RatePolicy]:
        return {
            target: limits.to_policy()
            for target, limits in self.rate_limits.items()
            if target != "default"
        }


def load_settings(path: Optional[Path] = None) -> PipelineSettings:
    """Read the TOML configuration file; a missing file yields defaults."""
    if path is None:
        path = Path(os.environ.get(CONFIG_ENV, DEFAULT_CONFIG))
    raw: Dict[str, Any] = {}
    if path.exists():
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    settings = PipelineSettings.model_validate(raw)
    if database := os.environ.get(DATABASE_ENV):
        settings.storage.database_path = Path(database)
    return settings
