"""strmarket process entry-point.

Usage:
    python -m strmarket [--log-level LEVEL] [--log-format FORMAT] COMMAND ...

Commands:
    serve                     Run the service loops until SIGTERM / Ctrl+C.
    add-location NAME         Register a location (optionally with --bbox).
    analyze LOCATION_ID       Fan out a full market analysis for a location.
    retry JOB_ID              Reset a FAILED job and republish it.
    scan-timeouts             Fail IN_PROGRESS jobs older than the timeout once.
    metrics LOCATION_ID       Print market metrics for a location.
    batch                     Run a batch refresh and wait for it to finish.

The orchestration logic lives in ``strmarket.orchestrator``.  This module
only parses arguments, calls ``configure_logging()`` first, and hands off.
One-shot commands print a JSON result on stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from strmarket.core import configure_logging
from strmarket.core.exceptions import ConfigError, StrMarketError
from strmarket.core.jobs import ScrapingJob
from strmarket.core.models import BoundingBox, Location
from strmarket.core.settings import Settings

if TYPE_CHECKING:
    from strmarket.orchestrator.runner import Runtime

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _job_summary(job: ScrapingJob) -> dict[str, Any]:
    return {
        "id": str(job.id),
        "locationId": str(job.location_id),
        "platform": job.platform.value,
        "jobType": job.job_type.value,
        "status": job.status.value,
        "searchDateStart": job.date_window.start.isoformat(),
        "searchDateEnd": job.date_window.end.isoformat(),
        "errorMessage": job.error_message,
    }


def _emit(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))  # noqa: T201


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_add_location(runtime: Runtime, args: argparse.Namespace) -> None:
    bbox = None
    if args.bbox:
        sw_lng, sw_lat, ne_lng, ne_lat = args.bbox
        bbox = BoundingBox(sw_lng=sw_lng, sw_lat=sw_lat, ne_lng=ne_lng, ne_lat=ne_lat)
    location = Location(id=uuid4(), name=args.name, bounding_box=bbox)
    await runtime.locations.add(location)
    _emit(location.model_dump(mode="json"))


async def _cmd_analyze(runtime: Runtime, args: argparse.Namespace) -> None:
    jobs = await runtime.orchestrator.orchestrate_location_analysis(args.location_id)
    if runtime.settings.bus_backend == "memory":
        logger.warning(
            "In-memory bus: work requests are lost when this process exits. "
            "Use BUS_BACKEND=rabbitmq to reach external workers."
        )
    _emit([_job_summary(job) for job in jobs])


async def _cmd_retry(runtime: Runtime, args: argparse.Namespace) -> None:
    job = await runtime.orchestrator.retry_job(args.job_id)
    _emit(_job_summary(job))


async def _cmd_scan_timeouts(runtime: Runtime, args: argparse.Namespace) -> None:
    count = await runtime.orchestrator.handle_timed_out_jobs()
    _emit({"timedOut": count})


async def _cmd_metrics(runtime: Runtime, args: argparse.Namespace) -> None:
    await runtime.locations.get_by_id(args.location_id)
    metrics = await runtime.analytics.analyze(args.location_id)
    _emit(metrics.model_dump(mode="json"))


async def _cmd_batch(runtime: Runtime, args: argparse.Namespace) -> None:
    from strmarket.orchestrator.batch import (  # noqa: PLC0415
        BatchRefreshRequest,
        BatchStrategy,
    )

    request = BatchRefreshRequest(
        strategy=BatchStrategy(args.strategy),
        delay_minutes=args.delay_minutes,
        stale_threshold_days=args.stale_days,
    )
    await runtime.batch.schedule_batch_refresh(request)
    progress = await runtime.batch.wait()
    _emit(asdict(progress))


_COMMANDS: dict[str, Callable[[Runtime, argparse.Namespace], Awaitable[None]]] = {
    "add-location": _cmd_add_location,
    "analyze": _cmd_analyze,
    "retry": _cmd_retry,
    "scan-timeouts": _cmd_scan_timeouts,
    "metrics": _cmd_metrics,
    "batch": _cmd_batch,
}


async def _run_command(settings: Settings, args: argparse.Namespace) -> None:
    from strmarket.orchestrator.runner import open_runtime  # noqa: PLC0415

    async with open_runtime(settings) as runtime:
        await _COMMANDS[args.command](runtime, args)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="strmarket",
        description="Short-term-rental scraping orchestrator and market analytics.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run timeout scan, result consumer and batch loops.")

    add = sub.add_parser("add-location", help="Register a location.")
    add.add_argument("name")
    add.add_argument(
        "--bbox",
        nargs=4,
        type=float,
        metavar=("SW_LNG", "SW_LAT", "NE_LNG", "NE_LAT"),
        help="Search bounding box.",
    )

    analyze = sub.add_parser("analyze", help="Start a full market analysis for a location.")
    analyze.add_argument("location_id", type=UUID)

    retry = sub.add_parser("retry", help="Retry a FAILED job.")
    retry.add_argument("job_id", type=UUID)

    sub.add_parser("scan-timeouts", help="Fail stuck IN_PROGRESS jobs once.")

    metrics = sub.add_parser("metrics", help="Print market metrics for a location.")
    metrics.add_argument("location_id", type=UUID)

    batch = sub.add_parser("batch", help="Run a batch refresh and wait for it.")
    batch.add_argument(
        "--strategy",
        choices=["ALL_LOCATIONS", "STALE_ONLY"],
        default="STALE_ONLY",
    )
    batch.add_argument("--delay-minutes", type=int, default=None)
    batch.add_argument("--stale-days", type=int, default=None)
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"strmarket: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger.info("strmarket starting up (%s)", args.command)

    try:
        settings = Settings()
        if args.command == "batch":
            if args.delay_minutes is None:
                args.delay_minutes = settings.batch_delay_minutes
            if args.stale_days is None:
                args.stale_days = settings.batch_stale_threshold_days

        if args.command == "serve":
            from strmarket.orchestrator.scheduler import run_service  # noqa: PLC0415

            logger.info("Running service (Ctrl+C to stop).")
            asyncio.run(run_service(settings))
        else:
            asyncio.run(_run_command(settings, args))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except StrMarketError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        sys.exit(0)
    except asyncio.CancelledError:
        logger.info("Shutdown complete; exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
