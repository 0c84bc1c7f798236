"""Unit tests for runtime assembly, the service loops and the CLI.

Tests cover:
- ``open_runtime`` wires every component around one in-memory database and
  the in-memory bus; a full analyse → complete → metrics round trip.
- ``build_bus`` rejects ``BUS_BACKEND=rabbitmq`` without an API URL.
- ``timeout_scan_loop`` and ``batch_refresh_loop`` survive failing iterations.
- ``run_service`` stops cleanly when cancelled.
- ``main`` argument parsing, one-shot commands and exit codes.
"""

from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from strmarket.__main__ import build_parser, main
from strmarket.core.exceptions import BatchAlreadyRunningError, ConfigError, ValidationError
from strmarket.core.models import JobStatus, JobType, Location
from strmarket.core.settings import Settings
from strmarket.messaging.bus import InMemoryBus
from strmarket.messaging.messages import ROUTING_JOB_COMPLETED, JOB_QUEUE
from strmarket.messaging.rabbitmq import RabbitHttpBus
from strmarket.orchestrator import scheduler
from strmarket.orchestrator.batch import BatchStrategy
from strmarket.orchestrator.runner import build_bus, open_runtime
from strmarket.orchestrator.scheduler import batch_refresh_loop, run_service, timeout_scan_loop


class _StopLoop(Exception):
    pass


def _memory_settings(**overrides: Any) -> Settings:
    return Settings(database_path=":memory:", **overrides)


def _fake_sleep(calls_before_stop: int) -> AsyncMock:
    return AsyncMock(side_effect=[None] * calls_before_stop + [_StopLoop()])


# ---------------------------------------------------------------------------
# open_runtime / build_bus
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("clean_env")
class TestOpenRuntime:
    @pytest.mark.asyncio
    async def test_components_share_one_bus(self) -> None:
        async with open_runtime(_memory_settings()) as runtime:
            assert isinstance(runtime.bus, InMemoryBus)
            assert runtime.settings.bus_backend == "memory"
            assert not runtime.batch.is_running
            assert runtime.listener.pending == 0

    @pytest.mark.asyncio
    async def test_supplied_bus_is_used_and_left_open(self) -> None:
        bus = InMemoryBus()
        bus.close = AsyncMock()  # type: ignore[method-assign]
        async with open_runtime(_memory_settings(), bus=bus) as runtime:
            assert runtime.bus is bus
        bus.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_analysis_round_trip(self, clock: Any) -> None:
        async with open_runtime(_memory_settings(), clock=clock) as runtime:
            location = Location(id=uuid4(), name="Porto")
            await runtime.locations.add(location)

            jobs = await runtime.orchestrator.orchestrate_location_analysis(location.id)
            assert {job.job_type for job in jobs} == {JobType.FULL_PROFILE, JobType.PRICE_SAMPLE}
            assert all(job.status is JobStatus.IN_PROGRESS for job in jobs)
            assert isinstance(runtime.bus, InMemoryBus)
            assert runtime.bus.pending(JOB_QUEUE) == len(jobs)

            before = await runtime.analytics.analyze(location.id)
            assert not before.has_data

            full_profile = next(j for j in jobs if j.job_type is JobType.FULL_PROFILE)
            await runtime.bus.publish(
                ROUTING_JOB_COMPLETED,
                {
                    "jobId": str(full_profile.id),
                    "locationId": str(location.id),
                    "propertiesFound": 1,
                    "properties": [
                        {
                            "platformId": "a-1",
                            "platform": full_profile.platform.value,
                            "title": "Ribeira flat",
                            "availability": [
                                {"month": "2026-02", "totalDays": 28, "bookedDays": 14}
                            ],
                        }
                    ],
                },
            )
            assert await runtime.consumer.drain() == 1
            assert runtime.listener.drain() == 1

            after = await runtime.analytics.analyze(location.id)
            assert after.snapshot_count == 1
            assert after.occupancy_rate == Decimal("0.5")

            stored = await runtime.locations.get_by_id(location.id)
            assert stored.last_scraped_at == clock()

    @pytest.mark.asyncio
    async def test_file_database_is_created(self, tmp_path: Path) -> None:
        db_file = tmp_path / "nested" / "str.db"
        async with open_runtime(Settings(database_path=str(db_file))) as runtime:
            await runtime.locations.add(Location(id=uuid4(), name="Faro"))
        assert db_file.exists()


@pytest.mark.usefixtures("clean_env")
class TestBuildBus:
    def test_memory_backend(self) -> None:
        assert isinstance(build_bus(_memory_settings()), InMemoryBus)

    def test_rabbitmq_without_url_raises(self) -> None:
        with pytest.raises(ConfigError, match="RABBITMQ_API_URL"):
            build_bus(_memory_settings(bus_backend="rabbitmq"))

    @pytest.mark.asyncio
    async def test_rabbitmq_backend(self) -> None:
        bus = build_bus(
            _memory_settings(bus_backend="RabbitMQ", rabbitmq_api_url="http://mq.local:15672/")
        )
        assert isinstance(bus, RabbitHttpBus)
        await bus.close()


# ---------------------------------------------------------------------------
# Periodic loops
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("clean_env")
class TestTimeoutScanLoop:
    @pytest.mark.asyncio
    async def test_failed_scan_does_not_stop_loop(self, monkeypatch: pytest.MonkeyPatch) -> None:
        runtime = MagicMock()
        runtime.settings = _memory_settings(job_timeout_minutes=5, timeout_scan_interval_s=60)
        runtime.orchestrator.handle_timed_out_jobs = AsyncMock(
            side_effect=[RuntimeError("database is locked"), 2]
        )
        sleep = _fake_sleep(1)
        monkeypatch.setattr(scheduler.asyncio, "sleep", sleep)

        with pytest.raises(_StopLoop):
            await timeout_scan_loop(runtime)

        assert runtime.orchestrator.handle_timed_out_jobs.await_count == 2
        runtime.orchestrator.handle_timed_out_jobs.assert_awaited_with(
            runtime.settings.job_timeout
        )
        sleep.assert_awaited_with(60)


@pytest.mark.usefixtures("clean_env")
class TestBatchRefreshLoop:
    @pytest.mark.asyncio
    async def test_every_outcome_is_survived(self, monkeypatch: pytest.MonkeyPatch) -> None:
        runtime = MagicMock()
        runtime.settings = _memory_settings(
            batch_refresh_interval_hours=2, batch_delay_minutes=3, batch_stale_threshold_days=7
        )
        runtime.batch.schedule_batch_refresh = AsyncMock(
            side_effect=[
                ValidationError("No locations selected for batch refresh"),
                BatchAlreadyRunningError(uuid4()),
                RuntimeError("boom"),
            ]
        )
        sleep = _fake_sleep(2)
        monkeypatch.setattr(scheduler.asyncio, "sleep", sleep)

        with pytest.raises(_StopLoop):
            await batch_refresh_loop(runtime)

        assert runtime.batch.schedule_batch_refresh.await_count == 3
        request = runtime.batch.schedule_batch_refresh.await_args.args[0]
        assert request.strategy is BatchStrategy.STALE_ONLY
        assert request.delay_minutes == 3
        assert request.stale_threshold_days == 7
        sleep.assert_awaited_with(7200)


@pytest.mark.usefixtures("clean_env")
class TestRunService:
    @pytest.mark.asyncio
    async def test_cancellation_stops_all_tasks(self) -> None:
        task = asyncio.create_task(run_service(_memory_settings()))
        await asyncio.sleep(0.05)
        assert not task.done()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        names = {t.get_name() for t in asyncio.all_tasks()}
        assert not any(name.startswith("strmarket-") for name in names)

    @pytest.mark.asyncio
    async def test_invalid_bus_config_raises(self) -> None:
        with pytest.raises(ConfigError):
            await run_service(_memory_settings(bus_backend="rabbitmq"))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestParser:
    def test_subcommand_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_uuid_arguments_are_parsed(self) -> None:
        location_id = uuid4()
        args = build_parser().parse_args(["analyze", str(location_id)])
        assert args.command == "analyze"
        assert args.location_id == location_id

    def test_malformed_uuid_is_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["retry", "not-a-uuid"])

    def test_batch_defaults(self) -> None:
        args = build_parser().parse_args(["batch"])
        assert args.strategy == "STALE_ONLY"
        assert args.delay_minutes is None
        assert args.stale_days is None

    def test_bbox_takes_four_floats(self) -> None:
        args = build_parser().parse_args(
            ["add-location", "Lisbon", "--bbox", "-9.23", "38.69", "-9.09", "38.80"]
        )
        assert args.bbox == [-9.23, 38.69, -9.09, 38.80]


@pytest.mark.usefixtures("clean_env")
class TestMain:
    def test_invalid_log_level_exits_1(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--log-level", "LOUD", "scan-timeouts"])
        assert exc_info.value.code == 1
        assert "configuration error" in capsys.readouterr().err

    def test_add_location_then_metrics(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))

        main(["add-location", "Lisbon", "--bbox", "-9.23", "38.69", "-9.09", "38.80"])
        added = json.loads(capsys.readouterr().out)
        assert added["name"] == "Lisbon"
        assert added["bounding_box"]["ne_lat"] == 38.80

        main(["metrics", added["id"]])
        metrics = json.loads(capsys.readouterr().out)
        assert metrics["location_id"] == added["id"]
        assert metrics["sample_count"] == 0
        assert metrics["average_daily_rate"] is None

    def test_scan_timeouts_on_empty_database(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        main(["scan-timeouts"])
        assert json.loads(capsys.readouterr().out) == {"timedOut": 0}

    def test_unknown_location_exits_1(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        with pytest.raises(SystemExit) as exc_info:
            main(["analyze", str(uuid4())])
        assert exc_info.value.code == 1

    def test_rabbitmq_without_url_exits_1(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        monkeypatch.setenv("BUS_BACKEND", "rabbitmq")
        with pytest.raises(SystemExit) as exc_info:
            main(["scan-timeouts"])
        assert exc_info.value.code == 1
