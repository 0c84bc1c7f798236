"""Unit tests for ``JobOrchestrator``.

Real in-memory SQLite repositories and a real ``InMemoryBus`` are used; only
publish failures are simulated with a small wrapper bus.

Tests cover:
- ``create_job``: persist-then-publish, validation, default window.
- Publish failures: job stored FAILED, ``JobCreationError`` chained from
  ``PublishError``; timeouts and unexpected bus errors count as failures.
- ``fan_out_all_platforms``: one job per platform, publish failures isolated,
  bad input rejected before any job exists.
- ``orchestrate_location_analysis``: 3 FULL_PROFILE + 36 PRICE_SAMPLE jobs.
- ``retry_job`` and ``handle_timed_out_jobs`` (idempotent).
- Worker notifications: completion, duplicates, late completions, failures.
- Query helpers by location and status.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import pytest

from strmarket.core.exceptions import (
    InvalidStateError,
    JobCreationError,
    JobNotFoundError,
    LocationNotFoundError,
    PublishError,
    ValidationError,
)
from strmarket.core.jobs import ScrapingJob
from strmarket.core.models import DateWindow, JobStatus, JobType, Location, Platform
from strmarket.core.planner import default_search_range
from strmarket.messaging.bus import InMemoryBus
from strmarket.messaging.messages import (
    JOB_QUEUE,
    CompletionNotification,
    DataUpdatedNotification,
    FailureNotification,
)
from strmarket.orchestrator.service import JobOrchestrator
from strmarket.storage.jobs import JobRepository
from strmarket.storage.locations import LocationRepository
from strmarket.storage.market_data import MarketDataRepository

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FlakyBus(InMemoryBus):
    """InMemoryBus that refuses (or stalls) work requests for chosen platforms."""

    def __init__(self, fail_for: set[str] | None = None, stall: bool = False) -> None:
        super().__init__()
        self.fail_for = fail_for or set()
        self.stall = stall

    async def publish(self, routing_key: str, payload: dict[str, Any]) -> None:
        if self.stall:
            await asyncio.sleep(10)
        if payload.get("platform") in self.fail_for:
            raise PublishError(None, "broker unreachable")
        await super().publish(routing_key, payload)


class _BrokenBus(InMemoryBus):
    """InMemoryBus whose publish fails with an error outside the messaging layer."""

    async def publish(self, routing_key: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("serializer blew up")


def _make(
    job_repo: JobRepository,
    location_repo: LocationRepository,
    market_repo: MarketDataRepository,
    clock: Any,
    bus: InMemoryBus,
    **kwargs: Any,
) -> JobOrchestrator:
    return JobOrchestrator(job_repo, location_repo, bus, market_repo, clock=clock, **kwargs)


def _completion(job_id: UUID, location_id: UUID, **overrides: Any) -> CompletionNotification:
    payload: dict[str, Any] = {
        "jobId": str(job_id),
        "locationId": str(location_id),
        "propertiesFound": 2,
        "properties": [
            {
                "platformId": "p-1",
                "platform": "AIRBNB",
                "title": "Loft",
                "price": "700",
                "availability": [
                    {"month": "2026-02", "totalDays": 28, "bookedDays": 14, "blockedDays": 0}
                ],
            },
            {"platformId": "p-2", "platform": "AIRBNB", "title": "Studio"},
        ],
    }
    payload.update(overrides)
    return CompletionNotification.model_validate(payload)


# ---------------------------------------------------------------------------
# create_job
# ---------------------------------------------------------------------------


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_job_is_published_and_started(
        self,
        orchestrator: JobOrchestrator,
        job_repo: JobRepository,
        bus: InMemoryBus,
        location: Location,
    ) -> None:
        job = await orchestrator.create_job(location.id, Platform.AIRBNB, JobType.FULL_PROFILE)

        assert job.status is JobStatus.IN_PROGRESS
        stored = await job_repo.get(job.id)
        assert stored is not None and stored.status is JobStatus.IN_PROGRESS

        (envelope,) = bus.drain(JOB_QUEUE)
        assert envelope.routing_key == "scraping.job.created"
        assert envelope.payload["jobId"] == str(job.id)
        assert envelope.payload["locationName"] == "Lisbon"
        assert envelope.payload["platform"] == "AIRBNB"
        assert envelope.payload["jobType"] == "FULL_PROFILE"
        assert envelope.payload["boundingBoxSwLng"] == pytest.approx(-9.23)

    @pytest.mark.asyncio
    async def test_default_window_is_default_search_range(
        self, orchestrator: JobOrchestrator, location: Location, clock: Any
    ) -> None:
        job = await orchestrator.create_job(location.id, "BOOKING", "PRICE_SAMPLE")
        assert job.date_window == default_search_range(clock.now.date())
        assert job.platform is Platform.BOOKING

    @pytest.mark.asyncio
    async def test_explicit_window_is_used(
        self, orchestrator: JobOrchestrator, bus: InMemoryBus, location: Location
    ) -> None:
        window = DateWindow(start=date(2026, 7, 1), end=date(2026, 7, 8))
        await orchestrator.create_job(location.id, "VRBO", "PRICE_SAMPLE", window)
        (envelope,) = bus.drain(JOB_QUEUE)
        assert envelope.payload["searchDateStart"] == "2026-07-01"
        assert envelope.payload["searchDateEnd"] == "2026-07-08"

    @pytest.mark.asyncio
    async def test_location_without_box_still_publishes(
        self,
        orchestrator: JobOrchestrator,
        location_repo: LocationRepository,
        bus: InMemoryBus,
    ) -> None:
        loc = Location(id=uuid4(), name="Unmapped")
        await location_repo.add(loc)
        await orchestrator.create_job(loc.id, "AIRBNB", "FULL_PROFILE")
        (envelope,) = bus.drain(JOB_QUEUE)
        assert envelope.payload["boundingBoxSwLng"] is None

    @pytest.mark.asyncio
    async def test_unknown_platform_rejected_before_storing(
        self, orchestrator: JobOrchestrator, job_repo: JobRepository, location: Location
    ) -> None:
        with pytest.raises(ValidationError, match="platform"):
            await orchestrator.create_job(location.id, "EXPEDIA", "FULL_PROFILE")
        assert await job_repo.list_by_location(location.id) == []

    @pytest.mark.asyncio
    async def test_unknown_job_type_rejected(
        self, orchestrator: JobOrchestrator, location: Location
    ) -> None:
        with pytest.raises(ValidationError, match="job type"):
            await orchestrator.create_job(location.id, "AIRBNB", "REVIEWS")

    @pytest.mark.asyncio
    async def test_unknown_location_raises(self, orchestrator: JobOrchestrator) -> None:
        with pytest.raises(LocationNotFoundError):
            await orchestrator.create_job(uuid4(), "AIRBNB", "FULL_PROFILE")


class TestPublishFailure:
    @pytest.mark.asyncio
    async def test_failed_publish_stores_failed_job(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        clock: Any,
        location: Location,
    ) -> None:
        orch = _make(job_repo, location_repo, market_repo, clock, _FlakyBus({"AIRBNB"}))

        with pytest.raises(JobCreationError) as exc_info:
            await orch.create_job(location.id, "AIRBNB", "FULL_PROFILE")

        assert isinstance(exc_info.value.__cause__, PublishError)
        stored = await job_repo.get(exc_info.value.job_id)
        assert stored is not None
        assert stored.status is JobStatus.FAILED
        assert stored.error_message is not None
        assert stored.error_message.startswith("Failed to publish job to queue: ")
        assert "broker unreachable" in stored.error_message

    @pytest.mark.asyncio
    async def test_publish_timeout_is_a_failure(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        clock: Any,
        location: Location,
    ) -> None:
        orch = _make(
            job_repo,
            location_repo,
            market_repo,
            clock,
            _FlakyBus(stall=True),
            publish_timeout_s=0.01,
        )
        with pytest.raises(JobCreationError, match="timed out"):
            await orch.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        (job,) = await job_repo.list_by_location(location.id)
        assert job.status is JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_publish_error_is_a_failure(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        clock: Any,
        location: Location,
    ) -> None:
        orch = _make(job_repo, location_repo, market_repo, clock, _BrokenBus())

        with pytest.raises(JobCreationError, match="serializer blew up") as exc_info:
            await orch.create_job(location.id, "VRBO", "FULL_PROFILE")

        cause = exc_info.value.__cause__
        assert isinstance(cause, PublishError)
        assert isinstance(cause.__cause__, RuntimeError)
        (job,) = await job_repo.list_by_location(location.id)
        assert job.status is JobStatus.FAILED
        assert job.error_message == (
            "Failed to publish job to queue: "
            f"[job {job.id}] RuntimeError: serializer blew up"
        )
        assert await orch.pending_jobs() == []

    @pytest.mark.asyncio
    async def test_unexpected_publish_error_in_fan_out(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        clock: Any,
        location: Location,
    ) -> None:
        orch = _make(job_repo, location_repo, market_repo, clock, _BrokenBus())

        assert await orch.fan_out_all_platforms(location.id, JobType.FULL_PROFILE) == []
        stored = await job_repo.list_by_location(location.id)
        assert len(stored) == 3
        assert all(job.status is JobStatus.FAILED for job in stored)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class TestFanOut:
    @pytest.mark.asyncio
    async def test_one_job_per_platform(
        self, orchestrator: JobOrchestrator, bus: InMemoryBus, location: Location
    ) -> None:
        jobs = await orchestrator.fan_out_all_platforms(location.id, JobType.FULL_PROFILE)
        assert {j.platform for j in jobs} == set(Platform)
        assert bus.pending(JOB_QUEUE) == 3

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        clock: Any,
        location: Location,
    ) -> None:
        bus = _FlakyBus({"BOOKING"})
        orch = _make(job_repo, location_repo, market_repo, clock, bus)

        jobs = await orch.fan_out_all_platforms(location.id, JobType.PRICE_SAMPLE)

        assert {j.platform for j in jobs} == {Platform.AIRBNB, Platform.VRBO}
        assert all(j.status is JobStatus.IN_PROGRESS for j in jobs)
        stored = await job_repo.list_by_location(location.id)
        failed = [j for j in stored if j.status is JobStatus.FAILED]
        assert [j.platform for j in failed] == [Platform.BOOKING]
        assert bus.pending(JOB_QUEUE) == 2

    @pytest.mark.asyncio
    async def test_unknown_location_raises_before_any_job(
        self, orchestrator: JobOrchestrator, job_repo: JobRepository, bus: InMemoryBus
    ) -> None:
        location_id = uuid4()
        with pytest.raises(LocationNotFoundError):
            await orchestrator.fan_out_all_platforms(location_id, JobType.FULL_PROFILE)
        assert await job_repo.list_by_location(location_id) == []
        assert bus.pending(JOB_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_unknown_job_type_raises_before_any_job(
        self,
        orchestrator: JobOrchestrator,
        job_repo: JobRepository,
        bus: InMemoryBus,
        location: Location,
    ) -> None:
        with pytest.raises(ValidationError, match="job type"):
            await orchestrator.fan_out_all_platforms(location.id, "PHOTO_SHOOT")
        assert await job_repo.list_by_location(location.id) == []
        assert bus.pending(JOB_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_location_analysis_creates_39_jobs(
        self, orchestrator: JobOrchestrator, bus: InMemoryBus, location: Location, clock: Any
    ) -> None:
        jobs = await orchestrator.orchestrate_location_analysis(location.id)

        assert len(jobs) == 39
        full = [j for j in jobs if j.job_type is JobType.FULL_PROFILE]
        samples = [j for j in jobs if j.job_type is JobType.PRICE_SAMPLE]
        assert len(full) == 3
        assert len(samples) == 36
        assert len({j.date_window for j in samples}) == 12
        assert min(j.date_window.start for j in samples) == clock.now.date() + timedelta(days=30)
        assert bus.pending(JOB_QUEUE) == 39

    @pytest.mark.asyncio
    async def test_location_analysis_unknown_location_raises(
        self, orchestrator: JobOrchestrator, job_repo: JobRepository
    ) -> None:
        location_id = uuid4()
        with pytest.raises(LocationNotFoundError):
            await orchestrator.orchestrate_location_analysis(location_id)
        assert await job_repo.list_by_location(location_id) == []


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_republishes_failed_job(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        clock: Any,
        location: Location,
    ) -> None:
        bus = _FlakyBus({"AIRBNB"})
        orch = _make(job_repo, location_repo, market_repo, clock, bus)
        with pytest.raises(JobCreationError) as exc_info:
            await orch.create_job(location.id, "AIRBNB", "PRICE_SAMPLE")
        job_id = exc_info.value.job_id
        original = await job_repo.get(job_id)
        assert original is not None

        bus.fail_for.clear()
        retried = await orch.retry_job(job_id)

        assert retried.id == job_id
        assert retried.status is JobStatus.IN_PROGRESS
        assert retried.error_message is None
        assert retried.job_type is JobType.PRICE_SAMPLE
        assert retried.date_window == original.date_window
        (envelope,) = bus.drain(JOB_QUEUE)
        assert envelope.payload["jobId"] == str(job_id)

    @pytest.mark.asyncio
    async def test_retry_non_failed_job_raises(
        self, orchestrator: JobOrchestrator, location: Location
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        with pytest.raises(InvalidStateError):
            await orchestrator.retry_job(job.id)

    @pytest.mark.asyncio
    async def test_retry_unknown_job_raises(self, orchestrator: JobOrchestrator) -> None:
        with pytest.raises(JobNotFoundError):
            await orchestrator.retry_job(uuid4())


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_stuck_jobs_are_failed_once(
        self,
        orchestrator: JobOrchestrator,
        job_repo: JobRepository,
        location: Location,
        clock: Any,
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        clock.advance(minutes=31)

        assert await orchestrator.handle_timed_out_jobs() == 1
        stored = await job_repo.get(job.id)
        assert stored is not None
        assert stored.status is JobStatus.FAILED
        assert stored.error_message == "Job timed out after 30 minutes"

        assert await orchestrator.handle_timed_out_jobs() == 0

    @pytest.mark.asyncio
    async def test_recent_jobs_are_left_alone(
        self, orchestrator: JobOrchestrator, location: Location, clock: Any
    ) -> None:
        await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        clock.advance(minutes=29)
        assert await orchestrator.handle_timed_out_jobs() == 0
        assert len(await orchestrator.in_progress_jobs()) == 1

    @pytest.mark.asyncio
    async def test_custom_timeout(
        self, orchestrator: JobOrchestrator, location: Location, clock: Any
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        clock.advance(minutes=6)
        assert await orchestrator.handle_timed_out_jobs(timedelta(minutes=5)) == 1
        assert (await orchestrator.get_job(job.id)).error_message == (
            "Job timed out after 5 minutes"
        )

    @pytest.mark.asyncio
    async def test_zero_timeout_is_not_the_default(
        self, orchestrator: JobOrchestrator, location: Location, clock: Any
    ) -> None:
        await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        clock.advance(seconds=1)
        assert await orchestrator.handle_timed_out_jobs(timedelta(0)) == 1


# ---------------------------------------------------------------------------
# Worker notifications
# ---------------------------------------------------------------------------


class TestRecordCompletion:
    @pytest.mark.asyncio
    async def test_completion_stores_data_and_signals(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        bus: InMemoryBus,
        clock: Any,
        location: Location,
    ) -> None:
        updates: list[DataUpdatedNotification] = []
        orch = _make(
            job_repo, location_repo, market_repo, clock, bus, on_data_updated=updates.append
        )
        job = await orch.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        clock.advance(minutes=2)

        result = await orch.record_completion(_completion(job.id, location.id))

        assert result is not None
        assert result.status is JobStatus.COMPLETED
        assert result.properties_found == 2
        assert await market_repo.count_properties(location.id) == 2
        assert len(await market_repo.availability_for_location(location.id)) == 1
        # FULL_PROFILE jobs do not turn the listed price into a sample.
        assert await market_repo.price_samples_for_location(location.id) == []
        assert (await location_repo.get_by_id(location.id)).last_scraped_at == clock.now
        assert updates == [DataUpdatedNotification(location_id=location.id, properties_count=2)]

    @pytest.mark.asyncio
    async def test_price_sample_job_derives_sample_from_price(
        self,
        orchestrator: JobOrchestrator,
        market_repo: MarketDataRepository,
        location: Location,
    ) -> None:
        window = DateWindow(start=date(2026, 3, 1), end=date(2026, 3, 8))
        job = await orchestrator.create_job(location.id, "AIRBNB", "PRICE_SAMPLE", window)

        await orchestrator.record_completion(_completion(job.id, location.id))

        (sample,) = await market_repo.price_samples_for_location(location.id)
        assert sample.price == Decimal("700")
        assert sample.search_date_start == date(2026, 3, 1)
        assert sample.number_of_nights == 7
        assert sample.average_daily_rate == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_duplicate_completion_is_ignored(
        self,
        orchestrator: JobOrchestrator,
        job_repo: JobRepository,
        location: Location,
        clock: Any,
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        await orchestrator.record_completion(_completion(job.id, location.id))
        first = await job_repo.get(job.id)
        assert first is not None

        clock.advance(minutes=5)
        await orchestrator.record_completion(
            _completion(job.id, location.id, propertiesFound=99, properties=[])
        )
        again = await job_repo.get(job.id)
        assert again is not None
        assert again.properties_found == 2
        assert again.completed_at == first.completed_at

    @pytest.mark.asyncio
    async def test_late_completion_keeps_failed_but_stores_data(
        self,
        orchestrator: JobOrchestrator,
        job_repo: JobRepository,
        market_repo: MarketDataRepository,
        location: Location,
        clock: Any,
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        clock.advance(minutes=31)
        await orchestrator.handle_timed_out_jobs()

        result = await orchestrator.record_completion(_completion(job.id, location.id))

        assert result is not None and result.status is JobStatus.FAILED
        stored = await job_repo.get(job.id)
        assert stored is not None and stored.status is JobStatus.FAILED
        assert await market_repo.count_properties(location.id) == 2

    @pytest.mark.asyncio
    async def test_unknown_job_is_dropped(
        self, orchestrator: JobOrchestrator, market_repo: MarketDataRepository
    ) -> None:
        location_id = uuid4()
        assert await orchestrator.record_completion(_completion(uuid4(), location_id)) is None
        assert await market_repo.count_properties(location_id) == 0

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_break_completion(
        self,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        market_repo: MarketDataRepository,
        bus: InMemoryBus,
        clock: Any,
        location: Location,
    ) -> None:
        def _broken(_: DataUpdatedNotification) -> None:
            raise RuntimeError("listener down")

        orch = _make(job_repo, location_repo, market_repo, clock, bus, on_data_updated=_broken)
        job = await orch.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        result = await orch.record_completion(_completion(job.id, location.id))
        assert result is not None and result.status is JobStatus.COMPLETED


class TestRecordFailure:
    @pytest.mark.asyncio
    async def test_failure_records_typed_message(
        self, orchestrator: JobOrchestrator, location: Location
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        notification = FailureNotification.model_validate(
            {"jobId": str(job.id), "errorMessage": "blocked by captcha", "errorType": "Captcha"}
        )

        result = await orchestrator.record_failure(notification)

        assert result is not None
        assert result.status is JobStatus.FAILED
        assert result.error_message == "Captcha: blocked by captcha"

    @pytest.mark.asyncio
    async def test_failure_for_completed_job_is_ignored(
        self, orchestrator: JobOrchestrator, location: Location
    ) -> None:
        job = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        await orchestrator.record_completion(_completion(job.id, location.id))

        result = await orchestrator.record_failure(
            FailureNotification(job_id=job.id, error_message="late")
        )
        assert result is not None and result.status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_for_unknown_job(self, orchestrator: JobOrchestrator) -> None:
        notification = FailureNotification(job_id=uuid4(), error_message="x")
        assert await orchestrator.record_failure(notification) is None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_jobs_grouped_by_location_and_status(
        self,
        orchestrator: JobOrchestrator,
        job_repo: JobRepository,
        location_repo: LocationRepository,
        location: Location,
        clock: Any,
    ) -> None:
        other = Location(id=uuid4(), name="Porto")
        await location_repo.add(other)
        started = await orchestrator.create_job(location.id, "AIRBNB", "FULL_PROFILE")
        queued = ScrapingJob.create(
            location.id,
            Platform.VRBO,
            JobType.FULL_PROFILE,
            default_search_range(clock().date()),
            clock=clock,
        )
        await job_repo.add(queued)
        await orchestrator.create_job(other.id, "BOOKING", "FULL_PROFILE")

        for_location = await orchestrator.jobs_for_location(location.id)
        assert {job.id for job in for_location} == {started.id, queued.id}
        assert [job.id for job in await orchestrator.pending_jobs()] == [queued.id]
        assert len(await orchestrator.in_progress_jobs()) == 2

    @pytest.mark.asyncio
    async def test_get_unknown_job_raises(self, orchestrator: JobOrchestrator) -> None:
        with pytest.raises(JobNotFoundError):
            await orchestrator.get_job(uuid4())
