"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional

from kdp_pipeline.observability.log import configure_logging
from kdp_pipeline.orchestrator.queue import ExtractionQueue
from kdp_pipeline.service import build_queue
from kdp_pipeline.settings import load_settings
from kdp_pipeline.storage.cache import CacheStore
from kdp_pipeline.storage.database import Database


def _open(args: argparse.Namespace) -> tuple[ExtractionQueue, CacheStore, float]:
    configure_logging(Path("config/logging.yaml"))
    settings = load_settings(Path(args.config) if args.config else None)
    database = Database(settings.storage.database_path)
    cache = CacheStore(database)
    return build_queue(settings, database, cache), cache, settings.workers.stale_timeout_seconds


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def cmd_stats(args: argparse.Namespace) -> None:
    queue, _, _ = _open(args)
    _emit(asyncio.run(queue.stats()))


def cmd_failures(args: argparse.Namespace) -> None:
    queue, _, _ = _open(args)
    jobs = asyncio.run(queue.recent_failures(args.limit))
    _emit([job.to_dict() for job in jobs])


def cmd_requeue_stale(args: argparse.Namespace) -> None:
    queue, _, default_timeout = _open(args)
    timeout = args.timeout if args.timeout is not None else default_timeout
    _emit({"requeued": asyncio.run(queue.requeue_stale(timeout)), "timeout": timeout})


def cmd_purge_cache(args: argparse.Namespace) -> None:
    _, cache, _ = _open(args)
    _emit({"purged": asyncio.run(cache.purge_expired())})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kdp-pipeline-admin", description="Queue administration")
    parser.add_argument("--config", help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Count jobs per status")

    failures = sub.add_parser("failures", help="List the most recent failed jobs")
    failures.add_argument("--limit", type=int, default=20)

    requeue = sub.add_parser("requeue-stale", help="Return abandoned processing jobs to pending")
    requeue.add_argument("--timeout", type=float, help="Seconds a job may stay processing")

    sub.add_parser("purge-cache", help="Delete expired cache entries")

    return parser


COMMANDS = {
    "stats": cmd_stats,
    "failures": cmd_failures,
    "requeue-stale": cmd_requeue_stale,
    "purge-cache": cmd_purge_cache,
}


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    COMMANDS[args.command](args)


if __name__ == "__main__":
    main()
