"""
Application Layer - Maintenance Jobs

Background sweeps run by the periodic scheduler:

- ``ReminderScanner`` queues due calendar reminders (``check-reminders``).
- ``ReminderProcessor`` handles one queued ``send-reminder`` job.
- ``StaleTaskCleanup`` recovers scheduling tasks stuck in PROCESSING
  (``cleanup-stale``).
- ``StatsAggregator`` snapshots scheduling counters (``aggregate-stats``).

Each sweep returns a plain dict so the scheduler can record it on the
``JobRun``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog

from opsagent.core.domain.scheduling import (
    CALENDAR_EVENTS_COLLECTION,
    REMINDERS_COLLECTION,
    SCHEDULING_STATS_COLLECTION,
    SCHEDULING_TASKS_COLLECTION,
    CalendarEventStatus,
    Reminder,
    ReminderStatus,
    SchedulingTask,
    SchedulingTaskStatus,
)
from opsagent.core.interfaces.job_queue import JobQueueProtocol
from opsagent.core.interfaces.notifier import NotifierProtocol
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

SEND_REMINDER_JOB = "send-reminder"
PROCESS_SCHEDULING_TASK_JOB = "process-scheduling-task"
REMINDER_TEMPLATE = "event-reminder"
CANCELLED_EVENT_MESSAGE = "Event was cancelled"


class ReminderScanner:
    """Queues a ``send-reminder`` job for every due PENDING reminder."""

    def __init__(
        self,
        store: RecordStoreProtocol,
        job_queue: JobQueueProtocol,
        batch_size: int = 100,
    ) -> None:
        self.store = store
        self.job_queue = job_queue
        self.batch_size = batch_size

    async def run(self, *, now: datetime | None = None) -> dict[str, int]:
        current = now or utc_now()
        due = await self.store.find(
            REMINDERS_COLLECTION,
            {"status": ReminderStatus.PENDING.value, "reminder_time": {"$lte": current}},
            limit=self.batch_size,
            order_by="reminder_time",
        )
        queued = 0
        skipped = 0
        for record in due:
            reminder = Reminder.from_record(record)
            event = await self.store.get(CALENDAR_EVENTS_COLLECTION, reminder.event_id)
            if event and event.get("status") == CalendarEventStatus.CANCELLED.value:
                await self.store.update(
                    REMINDERS_COLLECTION,
                    reminder.reminder_id,
                    {
                        "status": ReminderStatus.FAILED.value,
                        "error_message": CANCELLED_EVENT_MESSAGE,
                        "updated_at": current.isoformat(),
                    },
                )
                skipped += 1
                continue
            await self.job_queue.enqueue(
                SEND_REMINDER_JOB,
                {"reminder_id": reminder.reminder_id, "event_id": reminder.event_id},
                dedup_key=f"reminder:{reminder.reminder_id}",
            )
            queued += 1

        if due:
            logger.info(
                "reminder_scan.completed", processed=len(due), queued=queued, skipped=skipped
            )
        return {"processed": len(due), "queued": queued, "skipped": skipped}


class ReminderProcessor:
    """Handler of the ``send-reminder`` job.

    Re-reads the reminder before sending, so duplicate deliveries of the
    same job are harmless once the first one has marked it SENT.
    """

    def __init__(self, store: RecordStoreProtocol, notifier: NotifierProtocol) -> None:
        self.store = store
        self.notifier = notifier

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        reminder_id = str(payload.get("reminder_id", ""))
        record = await self.store.get(REMINDERS_COLLECTION, reminder_id)
        if record is None:
            logger.warning("reminder.not_found", reminder_id=reminder_id)
            return {"success": False, "reminder_id": reminder_id, "error": "Reminder not found"}

        reminder = Reminder.from_record(record)
        if reminder.status != ReminderStatus.PENDING:
            logger.info(
                "reminder.already_processed",
                reminder_id=reminder_id,
                status=reminder.status.value,
            )
            return {
                "success": True,
                "reminder_id": reminder_id,
                "skipped": True,
                "reason": "Already processed",
            }

        event = await self.store.get(CALENDAR_EVENTS_COLLECTION, reminder.event_id) or {}
        try:
            message_id = await self.notifier.send(
                reminder.channel,
                reminder.recipient,
                template_hint=REMINDER_TEMPLATE,
                payload={
                    "reminder_id": reminder_id,
                    "event_id": reminder.event_id,
                    "title": event.get("title"),
                    "start_time": event.get("start_time"),
                    "location": event.get("location"),
                },
            )
        except Exception as exc:
            await self.store.update(
                REMINDERS_COLLECTION,
                reminder_id,
                {
                    "status": ReminderStatus.FAILED.value,
                    "error_message": str(exc) or type(exc).__name__,
                    "retry_count": reminder.retry_count + 1,
                    "updated_at": utc_now().isoformat(),
                },
            )
            logger.error("reminder.send_failed", reminder_id=reminder_id, error=str(exc))
            raise

        sent_at = utc_now()
        await self.store.update(
            REMINDERS_COLLECTION,
            reminder_id,
            {
                "status": ReminderStatus.SENT.value,
                "sent_at": sent_at.isoformat(),
                "updated_at": sent_at.isoformat(),
            },
        )
        logger.info("reminder.sent", reminder_id=reminder_id, channel=reminder.channel)
        return {
            "success": True,
            "reminder_id": reminder_id,
            "message_id": message_id,
            "sent_at": sent_at.isoformat(),
        }


class StaleTaskCleanup:
    """Returns scheduling tasks stuck in PROCESSING to the queue, or fails them."""

    def __init__(
        self,
        store: RecordStoreProtocol,
        job_queue: JobQueueProtocol | None = None,
        stale_after_minutes: int = 30,
        max_retries: int = 3,
    ) -> None:
        self.store = store
        self.job_queue = job_queue
        self.stale_after_minutes = stale_after_minutes
        self.max_retries = max_retries

    async def run(self, *, now: datetime | None = None) -> dict[str, int]:
        current = now or utc_now()
        cutoff = current - timedelta(minutes=self.stale_after_minutes)
        stale = await self.store.find(
            SCHEDULING_TASKS_COLLECTION,
            {"status": SchedulingTaskStatus.PROCESSING.value, "updated_at": {"$lt": cutoff}},
        )
        retried = 0
        failed = 0
        for record in stale:
            task = SchedulingTask.from_record(record)
            if task.retry_count < self.max_retries:
                attempt = task.retry_count + 1
                await self.store.update(
                    SCHEDULING_TASKS_COLLECTION,
                    task.task_id,
                    {
                        "status": SchedulingTaskStatus.PENDING.value,
                        "retry_count": attempt,
                        "error_message": (
                            f"Processing timeout - retry {attempt}/{self.max_retries}"
                        ),
                        "updated_at": current.isoformat(),
                    },
                )
                if self.job_queue is not None:
                    await self.job_queue.enqueue(
                        PROCESS_SCHEDULING_TASK_JOB,
                        {"task_id": task.task_id, "retry": attempt},
                        dedup_key=f"scheduling-task:{task.task_id}:{attempt}",
                    )
                retried += 1
            else:
                await self.store.update(
                    SCHEDULING_TASKS_COLLECTION,
                    task.task_id,
                    {
                        "status": SchedulingTaskStatus.FAILED.value,
                        "error_message": (
                            "Processing timeout - max retries "
                            f"({self.max_retries}) exceeded"
                        ),
                        "updated_at": current.isoformat(),
                    },
                )
                failed += 1

        if stale:
            logger.warning(
                "stale_cleanup.completed", stale=len(stale), retried=retried, failed=failed
            )
        return {"stale": len(stale), "retried": retried, "failed": failed}


class StatsAggregator:
    """Computes a scheduling statistics snapshot and stores it."""

    def __init__(self, store: RecordStoreProtocol) -> None:
        self.store = store

    async def run(self, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or utc_now()
        day_ago = current - timedelta(hours=24)

        by_status = await self.store.group_count(SCHEDULING_TASKS_COLLECTION, "status")
        by_source = await self.store.group_count(SCHEDULING_TASKS_COLLECTION, "source")
        by_task_type = await self.store.group_count(SCHEDULING_TASKS_COLLECTION, "task_type")

        completed = await self.store.find(
            SCHEDULING_TASKS_COLLECTION,
            {
                "status": SchedulingTaskStatus.COMPLETED.value,
                "processing_time_ms": {"$exists": True},
            },
        )
        durations = [int(r["processing_time_ms"]) for r in completed]
        average = round(sum(durations) / len(durations)) if durations else 0

        stats: dict[str, Any] = {
            "timestamp": current.isoformat(),
            "tasks": {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "by_source": by_source,
                "by_task_type": by_task_type,
            },
            "processing": {
                "average_time_ms": average,
                "total_processed": len(durations),
                "failed_count": by_status.get(SchedulingTaskStatus.FAILED.value, 0),
                "pending_count": by_status.get(SchedulingTaskStatus.PENDING.value, 0),
            },
            "reminders": {
                "pending_count": await self.store.count(
                    REMINDERS_COLLECTION, {"status": ReminderStatus.PENDING.value}
                ),
                "sent_last_24h": await self.store.count(
                    REMINDERS_COLLECTION,
                    {"status": ReminderStatus.SENT.value, "sent_at": {"$gte": day_ago}},
                ),
                "failed_last_24h": await self.store.count(
                    REMINDERS_COLLECTION,
                    {"status": ReminderStatus.FAILED.value, "updated_at": {"$gte": day_ago}},
                ),
            },
        }
        await self.store.create(SCHEDULING_STATS_COLLECTION, dict(stats))
        logger.info(
            "stats.aggregated",
            total_tasks=stats["tasks"]["total"],
            pending_reminders=stats["reminders"]["pending_count"],
        )
        return stats
