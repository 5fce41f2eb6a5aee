"""Tests for the periodic maintenance sweeps."""

from __future__ import annotations

from datetime import timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from opsagent.application.maintenance_jobs import (
    CANCELLED_EVENT_MESSAGE,
    PROCESS_SCHEDULING_TASK_JOB,
    REMINDER_TEMPLATE,
    SEND_REMINDER_JOB,
    ReminderProcessor,
    ReminderScanner,
    StaleTaskCleanup,
    StatsAggregator,
)
from opsagent.core.domain.scheduling import (
    CALENDAR_EVENTS_COLLECTION,
    REMINDERS_COLLECTION,
    SCHEDULING_STATS_COLLECTION,
    SCHEDULING_TASKS_COLLECTION,
    Reminder,
    ReminderStatus,
    SchedulingTask,
    SchedulingTaskStatus,
)
from opsagent.core.utils.time import utc_now

NOW = utc_now()


async def _reminder(store, reminder_id: str, *, minutes_from_now: int = -1, **fields) -> None:
    reminder = Reminder(
        reminder_id=reminder_id,
        event_id=fields.pop("event_id", "evt-1"),
        org_id="org-1",
        reminder_time=NOW + timedelta(minutes=minutes_from_now),
        recipient=fields.pop("recipient", "ada@example.com"),
        **fields,
    )
    await store.create(REMINDERS_COLLECTION, reminder.to_record())


async def _scheduling_task(store, task_id: str, **fields) -> None:
    await store.create(
        SCHEDULING_TASKS_COLLECTION,
        SchedulingTask(task_id=task_id, org_id="org-1", **fields).to_record(),
    )


class TestReminderScanner:
    async def test_queues_due_reminders_once(self, store, job_queue) -> None:
        await store.create(CALENDAR_EVENTS_COLLECTION, {"id": "evt-1", "status": "SCHEDULED"})
        await _reminder(store, "r-due")
        await _reminder(store, "r-later", minutes_from_now=30)
        await _reminder(store, "r-sent", status=ReminderStatus.SENT)
        scanner = ReminderScanner(store, job_queue)

        first = await scanner.run(now=NOW)
        second = await scanner.run(now=NOW)

        assert first == {"processed": 1, "queued": 1, "skipped": 0}
        assert second["queued"] == 1
        jobs = job_queue.pending(SEND_REMINDER_JOB)
        assert len(jobs) == 1
        assert jobs[0].payload == {"reminder_id": "r-due", "event_id": "evt-1"}

    async def test_due_reminder_with_local_offset_is_queued(self, store, job_queue) -> None:
        await store.create(CALENDAR_EVENTS_COLLECTION, {"id": "evt-1", "status": "SCHEDULED"})
        due = (NOW - timedelta(minutes=30)).astimezone(timezone(timedelta(hours=2)))
        await _reminder(store, "r-local")
        await store.update(REMINDERS_COLLECTION, "r-local", {"reminder_time": due.isoformat()})

        result = await ReminderScanner(store, job_queue).run(now=NOW)

        assert result["queued"] == 1

    async def test_cancelled_event_fails_reminder(self, store, job_queue) -> None:
        await store.create(CALENDAR_EVENTS_COLLECTION, {"id": "evt-x", "status": "CANCELLED"})
        await _reminder(store, "r-1", event_id="evt-x")

        result = await ReminderScanner(store, job_queue).run(now=NOW)

        assert result == {"processed": 1, "queued": 0, "skipped": 1}
        record = await store.get(REMINDERS_COLLECTION, "r-1")
        assert record["status"] == "FAILED"
        assert record["error_message"] == CANCELLED_EVENT_MESSAGE
        assert len(job_queue) == 0

    async def test_batch_size_limits_work(self, store, job_queue) -> None:
        for index in range(3):
            await _reminder(store, f"r-{index}", minutes_from_now=-10 + index)

        result = await ReminderScanner(store, job_queue, batch_size=2).run(now=NOW)

        assert result["processed"] == 2
        assert [j.payload["reminder_id"] for j in job_queue.pending()] == ["r-0", "r-1"]


class TestReminderProcessor:
    @pytest.fixture
    def notifier(self) -> AsyncMock:
        notifier = AsyncMock()
        notifier.send.return_value = "msg-1"
        return notifier

    async def test_sends_and_marks_sent(self, store, notifier) -> None:
        await store.create(
            CALENDAR_EVENTS_COLLECTION,
            {"id": "evt-1", "title": "Kickoff", "start_time": "2026-01-05T09:00:00+00:00"},
        )
        await _reminder(store, "r-1", channel="sms")

        result = await ReminderProcessor(store, notifier).process({"reminder_id": "r-1"})

        assert result["success"] is True
        assert result["message_id"] == "msg-1"
        notifier.send.assert_awaited_once()
        args, kwargs = notifier.send.call_args
        assert args == ("sms", "ada@example.com")
        assert kwargs["template_hint"] == REMINDER_TEMPLATE
        assert kwargs["payload"]["title"] == "Kickoff"
        record = await store.get(REMINDERS_COLLECTION, "r-1")
        assert record["status"] == "SENT"
        assert record["sent_at"] == result["sent_at"]

    async def test_duplicate_delivery_is_skipped(self, store, notifier) -> None:
        await _reminder(store, "r-1", status=ReminderStatus.SENT)

        result = await ReminderProcessor(store, notifier).process({"reminder_id": "r-1"})

        assert result["skipped"] is True
        assert result["reason"] == "Already processed"
        notifier.send.assert_not_awaited()

    async def test_missing_reminder(self, store, notifier) -> None:
        result = await ReminderProcessor(store, notifier).process({"reminder_id": "ghost"})
        assert result == {"success": False, "reminder_id": "ghost", "error": "Reminder not found"}

    async def test_send_failure_marks_failed_and_reraises(self, store, notifier) -> None:
        notifier.send.side_effect = ConnectionError("smtp down")
        await _reminder(store, "r-1", retry_count=1)

        with pytest.raises(ConnectionError):
            await ReminderProcessor(store, notifier).process({"reminder_id": "r-1"})

        record = await store.get(REMINDERS_COLLECTION, "r-1")
        assert record["status"] == "FAILED"
        assert record["error_message"] == "smtp down"
        assert record["retry_count"] == 2


class TestStaleTaskCleanup:
    async def test_retries_then_fails(self, store, job_queue) -> None:
        old = NOW - timedelta(minutes=45)
        await _scheduling_task(
            store, "s-retry", status=SchedulingTaskStatus.PROCESSING, updated_at=old
        )
        await _scheduling_task(
            store,
            "s-dead",
            status=SchedulingTaskStatus.PROCESSING,
            retry_count=3,
            updated_at=old,
        )
        await _scheduling_task(
            store,
            "s-fresh",
            status=SchedulingTaskStatus.PROCESSING,
            updated_at=NOW - timedelta(minutes=5),
        )

        result = await StaleTaskCleanup(store, job_queue).run(now=NOW)

        assert result == {"stale": 2, "retried": 1, "failed": 1}
        retried = await store.get(SCHEDULING_TASKS_COLLECTION, "s-retry")
        assert retried["status"] == "PENDING"
        assert retried["retry_count"] == 1
        assert retried["error_message"] == "Processing timeout - retry 1/3"
        dead = await store.get(SCHEDULING_TASKS_COLLECTION, "s-dead")
        assert dead["status"] == "FAILED"
        assert dead["error_message"] == "Processing timeout - max retries (3) exceeded"
        fresh = await store.get(SCHEDULING_TASKS_COLLECTION, "s-fresh")
        assert fresh["status"] == "PROCESSING"

        jobs = job_queue.pending(PROCESS_SCHEDULING_TASK_JOB)
        assert [j.payload for j in jobs] == [{"task_id": "s-retry", "retry": 1}]

    async def test_works_without_queue(self, store) -> None:
        await _scheduling_task(
            store,
            "s-1",
            status=SchedulingTaskStatus.PROCESSING,
            updated_at=NOW - timedelta(hours=2),
        )
        result = await StaleTaskCleanup(store, stale_after_minutes=60).run(now=NOW)
        assert result["retried"] == 1


class TestStatsAggregator:
    async def test_snapshot_is_computed_and_stored(self, store) -> None:
        await _scheduling_task(
            store,
            "s-1",
            status=SchedulingTaskStatus.COMPLETED,
            processing_time_ms=100,
            source="email",
            task_type="booking",
        )
        await _scheduling_task(
            store,
            "s-2",
            status=SchedulingTaskStatus.COMPLETED,
            processing_time_ms=201,
            source="email",
            task_type="booking",
        )
        await _scheduling_task(
            store, "s-3", status=SchedulingTaskStatus.FAILED, source="api", task_type="cancel"
        )
        await _scheduling_task(store, "s-4", status=SchedulingTaskStatus.PENDING, source="api")
        await _reminder(store, "r-pending", minutes_from_now=10)
        await _reminder(
            store, "r-sent", status=ReminderStatus.SENT, sent_at=NOW - timedelta(hours=1)
        )
        await _reminder(
            store, "r-old", status=ReminderStatus.SENT, sent_at=NOW - timedelta(days=3)
        )
        await _reminder(store, "r-failed", status=ReminderStatus.FAILED, updated_at=NOW)

        stats = await StatsAggregator(store).run(now=NOW)

        assert stats["tasks"]["total"] == 4
        assert stats["tasks"]["by_status"]["COMPLETED"] == 2
        assert stats["tasks"]["by_source"] == {"email": 2, "api": 2}
        assert stats["processing"] == {
            "average_time_ms": 150,
            "total_processed": 2,
            "failed_count": 1,
            "pending_count": 1,
        }
        assert stats["reminders"] == {
            "pending_count": 1,
            "sent_last_24h": 1,
            "failed_last_24h": 1,
        }
        assert await store.count(SCHEDULING_STATS_COLLECTION) == 1
