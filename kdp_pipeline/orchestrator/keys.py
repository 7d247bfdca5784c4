"""Deterministic cache keys for extraction jobs."""
from __future__ import annotations

import hashlib
from typing import Any, Dict

import orjson

from kdp_pipeline.orchestrator.jobs import JobKind


def _canonical(payload: Dict[str, Any]) -> bytes:
    return orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)


def cache_key(kind: JobKind, payload: Dict[str, Any]) -> str:
    """Build the cache key for an already normalized payload."""
    marketplace = str(payload.get("marketplace", "US"))
    digest = hashlib.sha1(_canonical(payload)).hexdigest()
    return f"{kind.value}:{marketplace}:{digest}"
