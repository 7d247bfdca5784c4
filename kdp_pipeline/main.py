"""Command-line entrypoints for the KDP extraction pipeline."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Coroutine, List, Optional

from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop unavailable on some platforms
    uvloop = None

from kdp_pipeline.errors import InvalidPayload, NotFound
from kdp_pipeline.observability.log import configure_logging
from kdp_pipeline.observability.metrics import record_duration
from kdp_pipeline.orchestrator.jobs import JobKind
from kdp_pipeline.orchestrator.schedule_loop import run_schedule_loop
from kdp_pipeline.service import Pipeline, open_pipeline
from kdp_pipeline.settings import PipelineSettings, load_settings

LOGGING_CONFIG = Path("config/logging.yaml")


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="kdp-pipeline", description="KDP market-research extraction pipeline")
    parser.add_argument("--config", type=Path, help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Submit an extraction job")
    submit.add_argument("--kind", required=True, choices=[kind.value for kind in JobKind])
    submit.add_argument("--payload", required=True, help="JSON object with the job parameters")
    submit.add_argument("--priority", type=int, default=0, help="Higher runs sooner")

    status = sub.add_parser("status", help="Show a job's status and result")
    status.add_argument("job_id")

    cancel = sub.add_parser("cancel", help="Cancel a pending or running job")
    cancel.add_argument("job_id")

    work = sub.add_parser("work", help="Run the worker pool")
    work.add_argument("--workers", type=int, help="Override the configured pool size")
    work.add_argument("--drain", action="store_true", help="Exit once no job is claimable")

    schedule = sub.add_parser("schedule", help="Run the scheduler loop")
    schedule.add_argument("--ticks", type=int, help="Number of iterations to execute")
    schedule.add_argument("--interval", type=float, help="Seconds between ticks")

    sub.add_parser("seed-jobs", help="Submit a handful of demo lookups")

    return parser


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _submit(pipeline: Pipeline, args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
        job_id = await pipeline.submit_job(args.kind, payload, args.priority)
    except (json.JSONDecodeError, InvalidPayload) as exc:
        _print({"error": f"InvalidPayload: {exc}"})
        return 2
    _print({"job_id": job_id})
    return 0


async def _status(pipeline: Pipeline, args: argparse.Namespace) -> int:
    try:
        _print(await pipeline.get_job_status(args.job_id))
    except NotFound as exc:
        _print({"error": str(exc)})
        return 1
    return 0


async def _cancel(pipeline: Pipeline, args: argparse.Namespace) -> int:
    cancelled = await pipeline.cancel_job(args.job_id)
    _print({"job_id": args.job_id, "cancelled": cancelled})
    return 0 if cancelled else 1


async def _work(pipeline: Pipeline, args: argparse.Namespace) -> int:
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    await pipeline.maintain()
    with record_duration(pipeline.metrics, "run_duration_ms"):
        if args.drain:
            await pipeline.pool.drain()
        else:
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(signum, pipeline.pool.stop)
            await pipeline.pool.run()
    metrics_path = pipeline.settings.storage.metrics_dir / f"run_{run_id}.json"
    pipeline.metrics.export(path=metrics_path, run_id=run_id)
    health = pipeline.health()
    _print({"run_id": run_id, "health": health, "metrics": str(metrics_path)})
    return 0 if health["healthy"] else 3


async def _schedule(pipeline: Pipeline, args: argparse.Namespace) -> int:
    submitted = await run_schedule_loop(pipeline, interval_seconds=args.interval, ticks=args.ticks)
    _print({"submitted": submitted})
    return 0


async def _seed(pipeline: Pipeline, args: argparse.Namespace) -> int:
    from scripts.seed_jobs import seed_jobs

    _print({"submitted": await seed_jobs(pipeline)})
    return 0


COMMANDS = {
    "submit": _submit,
    "status": _status,
    "cancel": _cancel,
    "work": _work,
    "schedule": _schedule,
    "seed-jobs": _seed,
}


async def run_command(args: argparse.Namespace, settings: PipelineSettings) -> int:
    """Open the pipeline and dispatch the parsed command, returning an exit code."""
    configure_logging(LOGGING_CONFIG)
    if getattr(args, "workers", None):
        settings.workers.pool_size = args.workers
    async with open_pipeline(settings) as pipeline:
        return await COMMANDS[args.command](pipeline, args)


def _run(coro: Coroutine[Any, Any, int]) -> int:
    if uvloop is not None:
        return uvloop.run(coro)
    return asyncio.run(coro)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.config)
    code = _run(run_command(args, settings))
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
