"""Translate jobs into concrete fetch requests."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from kdp_pipeline.orchestrator.jobs import Job, JobKind
from kdp_pipeline.orchestrator.payloads import MARKETPLACE_DOMAINS


@dataclass(slots=True)
class FetchRequest:
    """One network request and the rate-limit target it counts against."""

    target: str
    url: str
    method: str = "GET"
    params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


def build_request(job: Job) -> FetchRequest:
    """Map a job's kind and payload onto its marketplace URL."""
    payload = job.payload
    domain = MARKETPLACE_DOMAINS[job.marketplace]
    base = f"https://{domain}"
    if job.kind is JobKind.KEYWORD_LOOKUP:
        params = {"k": payload["query"], "i": "stripbooks"}
        if payload.get("page", 1) > 1:
            params["page"] = str(payload["page"])
        return FetchRequest(target=domain, url=f"{base}/s", params=params)
    if job.kind is JobKind.PRODUCT_LOOKUP:
        return FetchRequest(target=domain, url=f"{base}/dp/{payload['asin']}")
    if job.kind is JobKind.CATEGORY_LOOKUP:
        params = {"node": payload["node_id"]}
        if payload.get("page", 1) > 1:
            params["page"] = str(payload["page"])
        return FetchRequest(target=domain, url=f"{base}/b", params=params)
    sort = "recent" if payload.get("sort", "recent") == "recent" else "helpful"
    params = {"sortBy": sort, "pageNumber": str(payload.get("page", 1))}
    return FetchRequest(target=domain, url=f"{base}/product-reviews/{payload['asin']}", params=params)
