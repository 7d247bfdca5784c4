"""Turn fetch responses into the results stored on jobs and in the cache."""
from __future__ import annotations

from typing import Any, Callable, Dict

import orjson

from kdp_pipeline.errors import PermanentFetchError
from kdp_pipeline.fetch.fetcher import FetchResponse
from kdp_pipeline.orchestrator.jobs import Job

Extractor = Callable[[Job, FetchResponse], Any]


def raw_document(job: Job, response: FetchResponse) -> Dict[str, Any]:
    return {
        "kind": job.kind.value,
        "url": response.url,
        "status_code": response.status_code,
        "content_type": response.content_type,
        "body": response.text,
        "fetched_at": response.fetched_at.isoformat(),
    }


def default_extractor(job: Job, response: FetchResponse) -> Any:
    """Decode JSON bodies; keep anything else as a raw document envelope."""
    content_type = response.content_type
    if content_type == "application/json" or content_type.endswith("+json"):
        try:
            return response.json()
        except orjson.JSONDecodeError as exc:
            raise PermanentFetchError("malformed JSON response", url=response.url) from exc
    return raw_document(job, response)
