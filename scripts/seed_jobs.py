#!/usr/bin/env python
"""Submit a handful of demo lookups to the extraction queue."""
from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, List

from dotenv import load_dotenv

if TYPE_CHECKING:
    from kdp_pipeline.service import Pipeline

DEMO_JOBS = [
    {
        "kind": "keyword-lookup",
        "payload": {"query": "cookbook", "marketplace": "US"},
        "priority": 5,
    },
    {
        "kind": "keyword-lookup",
        "payload": {"query": "low content journal", "marketplace": "UK"},
        "priority": 3,
    },
    {
        "kind": "category-lookup",
        "payload": {"node_id": "6", "marketplace": "US"},
        "priority": 1,
    },
    {
        "kind": "product-lookup",
        "payload": {"asin": "B0C1234567", "marketplace": "US"},
        "priority": 1,
    },
]


async def seed_jobs(pipeline: "Pipeline") -> List[str]:
    """Submit every demo job, returning the ids handed back by the queue."""
    job_ids: List[str] = []
    for job in DEMO_JOBS:
        job_ids.append(await pipeline.submit_job(job["kind"], job["payload"], job["priority"]))
    return job_ids


async def _main(config: Path | None) -> None:
    from kdp_pipeline.service import open_pipeline
    from kdp_pipeline.settings import load_settings

    async with open_pipeline(load_settings(config)) as pipeline:
        for job_id in await seed_jobs(pipeline):
            print(job_id)


if __name__ == "__main__":
    load_dotenv()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", type=Path)
    args = parser.parse_args()
    asyncio.run(_main(args.config))
