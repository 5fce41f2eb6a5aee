"""Records handled by the background sweep jobs.

Covers calendar reminders, scheduling work items, periodic job
definitions and the per-run state machine of a periodic job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from opsagent.core.utils.time import format_timestamp, parse_timestamp, utc_now

REMINDERS_COLLECTION = "reminders"
CALENDAR_EVENTS_COLLECTION = "calendar_events"
SCHEDULING_TASKS_COLLECTION = "scheduling_tasks"
SCHEDULING_STATS_COLLECTION = "scheduling_stats"


class ReminderStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class CalendarEventStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class SchedulingTaskStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Reminder:
    reminder_id: str
    event_id: str
    org_id: str
    status: ReminderStatus = ReminderStatus.PENDING
    reminder_time: datetime = field(default_factory=utc_now)
    recipient: str | None = None
    channel: str = "email"
    retry_count: int = 0
    error_message: str | None = None
    sent_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.reminder_id,
            "event_id": self.event_id,
            "org_id": self.org_id,
            "status": self.status.value,
            "reminder_time": self.reminder_time.isoformat(),
            "recipient": self.recipient,
            "channel": self.channel,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "sent_at": format_timestamp(self.sent_at),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Reminder:
        return cls(
            reminder_id=str(record["id"]),
            event_id=str(record.get("event_id", "")),
            org_id=str(record.get("org_id", "")),
            status=ReminderStatus(record.get("status", ReminderStatus.PENDING.value)),
            reminder_time=parse_timestamp(record.get("reminder_time")) or utc_now(),
            recipient=record.get("recipient"),
            channel=str(record.get("channel", "email")),
            retry_count=int(record.get("retry_count", 0)),
            error_message=record.get("error_message"),
            sent_at=parse_timestamp(record.get("sent_at")),
            updated_at=parse_timestamp(record.get("updated_at")) or utc_now(),
        )


@dataclass
class SchedulingTask:
    """A unit of scheduling work picked up by an external worker."""

    task_id: str
    status: SchedulingTaskStatus = SchedulingTaskStatus.PENDING
    source: str = "API"
    task_type: str = "unknown"
    org_id: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None
    processing_time_ms: int | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "status": self.status.value,
            "source": self.source,
            "task_type": self.task_type,
            "org_id": self.org_id,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "processed_at": format_timestamp(self.processed_at),
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> SchedulingTask:
        return cls(
            task_id=str(record["id"]),
            status=SchedulingTaskStatus(record.get("status", "PENDING")),
            source=str(record.get("source", "API")),
            task_type=str(record.get("task_type", "unknown")),
            org_id=record.get("org_id"),
            retry_count=int(record.get("retry_count", 0)),
            error_message=record.get("error_message"),
            created_at=parse_timestamp(record.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(record.get("updated_at")) or utc_now(),
            processed_at=parse_timestamp(record.get("processed_at")),
            processing_time_ms=record.get("processing_time_ms"),
        )


class JobRunStatus(str, Enum):
    """State machine of a single periodic job run."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRun:
    job_name: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    status: JobRunStatus = JobRunStatus.SCHEDULED
    scheduled_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    def mark_running(self) -> None:
        self.status = JobRunStatus.RUNNING
        self.started_at = utc_now()

    def mark_completed(self, result: dict[str, Any] | None) -> None:
        self.status = JobRunStatus.COMPLETED
        self.result = result
        self.finished_at = utc_now()

    def mark_failed(self, error: str) -> None:
        self.status = JobRunStatus.FAILED
        self.error = error
        self.finished_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "run_id": self.run_id,
            "status": self.status.value,
            "scheduled_at": self.scheduled_at.isoformat(),
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "result": self.result,
            "error": self.error,
        }


class SLAStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    BREACHED = "BREACHED"
    ALREADY_WARNED = "ALREADY_WARNED"
    ALREADY_BREACHED = "ALREADY_BREACHED"


@dataclass(frozen=True)
class SLACheckResult:
    task_id: str
    status: SLAStatus
    expected_minutes: int
    actual_minutes: float
    percentage_used: float
    event_emitted: bool = False


@dataclass
class SLACheckSummary:
    total_checked: int = 0
    ok_count: int = 0
    warning_count: int = 0
    breached_count: int = 0
    already_warned_count: int = 0
    already_breached_count: int = 0
    error_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def record(self, status: SLAStatus) -> None:
        counters = {
            SLAStatus.OK: "ok_count",
            SLAStatus.WARNING: "warning_count",
            SLAStatus.BREACHED: "breached_count",
            SLAStatus.ALREADY_WARNED: "already_warned_count",
            SLAStatus.ALREADY_BREACHED: "already_breached_count",
        }
        attr = counters[status]
        setattr(self, attr, getattr(self, attr) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_checked": self.total_checked,
            "ok_count": self.ok_count,
            "warning_count": self.warning_count,
            "breached_count": self.breached_count,
            "already_warned_count": self.already_warned_count,
            "already_breached_count": self.already_breached_count,
            "error_count": self.error_count,
            "errors": list(self.errors),
        }
