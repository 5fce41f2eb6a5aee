"""Tests for PeriodicScheduler."""

import asyncio
from datetime import timedelta

import pytest

from opsagent.core.domain.errors import NotFoundError, ValidationError
from opsagent.core.domain.scheduling import JobRunStatus
from opsagent.infrastructure.scheduler.periodic_scheduler import (
    PeriodicScheduler,
    parse_interval,
)


class TestParseInterval:
    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("2h", timedelta(hours=2)),
            ("1d", timedelta(days=1)),
            ("45", timedelta(seconds=45)),
            (" 5M ", timedelta(minutes=5)),
        ],
    )
    def test_valid(self, expression: str, expected: timedelta) -> None:
        assert parse_interval(expression) == expected

    @pytest.mark.parametrize("expression", ["", "m", "0m", "-5m", "1.5h", "every hour"])
    def test_invalid(self, expression: str) -> None:
        with pytest.raises(ValidationError):
            parse_interval(expression)


class TestPeriodicScheduler:
    """Tests for job registration, manual runs and the interval loop."""

    @pytest.fixture
    def scheduler(self) -> PeriodicScheduler:
        return PeriodicScheduler(run_history_limit=3)

    def test_duplicate_name_rejected(self, scheduler: PeriodicScheduler) -> None:
        async def job() -> None:
            return None

        scheduler.add_job("sweep", "1m", job)
        with pytest.raises(ValidationError):
            scheduler.add_job("sweep", "5m", job)

    async def test_run_now_records_result(self, scheduler: PeriodicScheduler) -> None:
        async def job() -> dict:
            return {"processed": 2}

        scheduler.add_job("sweep", "1h", job)
        run = await scheduler.run_now("sweep")

        assert run.status == JobRunStatus.COMPLETED
        assert run.result == {"processed": 2}
        assert run.started_at is not None and run.finished_at is not None
        assert scheduler.list_jobs()[0].last_run is run

    async def test_failing_job_is_recorded_not_raised(
        self, scheduler: PeriodicScheduler
    ) -> None:
        async def job() -> None:
            raise RuntimeError("store unavailable")

        scheduler.add_job("sweep", "1h", job)
        run = await scheduler.run_now("sweep")

        assert run.status == JobRunStatus.FAILED
        assert run.error == "store unavailable"

    async def test_history_is_bounded(self, scheduler: PeriodicScheduler) -> None:
        async def job() -> None:
            return None

        scheduler.add_job("sweep", "1h", job)
        for _ in range(5):
            await scheduler.run_now("sweep")

        assert len(scheduler.history("sweep")) == 3
        assert scheduler.list_jobs()[0].to_dict()["runs"] == 3

    async def test_unknown_job(self, scheduler: PeriodicScheduler) -> None:
        with pytest.raises(NotFoundError):
            await scheduler.run_now("missing")
        with pytest.raises(NotFoundError):
            scheduler.history("missing")

    async def test_interval_loop_fires_until_stopped(
        self, scheduler: PeriodicScheduler
    ) -> None:
        fired = asyncio.Event()
        calls = {"count": 0}

        async def job() -> None:
            calls["count"] += 1
            if calls["count"] >= 2:
                fired.set()

        scheduler.add_job("fast", timedelta(milliseconds=10), job)
        await scheduler.start()
        assert scheduler.is_running is True

        await asyncio.wait_for(fired.wait(), timeout=2)
        await scheduler.stop()

        assert scheduler.is_running is False
        count_after_stop = calls["count"]
        await asyncio.sleep(0.05)
        assert calls["count"] == count_after_stop

    async def test_job_added_while_running_starts_looping(
        self, scheduler: PeriodicScheduler
    ) -> None:
        fired = asyncio.Event()

        async def job() -> None:
            fired.set()

        await scheduler.start()
        scheduler.add_job("late", timedelta(milliseconds=10), job)

        await asyncio.wait_for(fired.wait(), timeout=2)
        await scheduler.stop()
