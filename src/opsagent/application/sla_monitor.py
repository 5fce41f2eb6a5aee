"""
SLA Monitor

Compares how long open tasks have been running against their
``typical_minutes`` budget. Crossing the warning or breach threshold emits
``task:sla_warning`` / ``task:sla_breached`` exactly once per task; the
timestamps recorded on the task timeline make repeated checks idempotent.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from opsagent.core.domain.config_schema import SLASettings
from opsagent.core.domain.errors import NotFoundError
from opsagent.core.domain.events import TASK_SLA_BREACHED, TASK_SLA_WARNING, EmitOptions
from opsagent.core.domain.scheduling import SLACheckResult, SLACheckSummary, SLAStatus
from opsagent.core.domain.task import TASKS_COLLECTION, TaskInstance, TaskStatus
from opsagent.core.interfaces.event_bus import EventBusProtocol
from opsagent.core.interfaces.job_queue import JobQueueProtocol
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

TASK_EVENT_JOB = "task-event"

_TERMINAL_STATUSES = [s.value for s in TaskStatus if s.is_terminal]


def elapsed_minutes(task: TaskInstance, now: datetime) -> float:
    """Minutes since the task started (or was created)."""
    start = task.timeline.started_at or task.created_at
    return (now - start).total_seconds() / 60


class SLAMonitor:
    """Detects SLA warnings and breaches on open tasks."""

    def __init__(
        self,
        store: RecordStoreProtocol,
        event_bus: EventBusProtocol,
        job_queue: JobQueueProtocol | None = None,
        settings: SLASettings | None = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self.job_queue = job_queue
        self.settings = settings or SLASettings()

    async def check_task(self, task_id: str, *, now: datetime | None = None) -> SLACheckResult:
        """Check one task, emitting an event when it newly crosses a threshold.

        Raises:
            NotFoundError: If the task does not exist.
        """
        record = await self.store.get(TASKS_COLLECTION, task_id)
        if record is None:
            raise NotFoundError(f"Task not found: {task_id}", details={"task_id": task_id})
        task = TaskInstance.from_record(record)
        current = now or utc_now()

        if task.status.is_terminal or not task.typical_minutes or task.typical_minutes <= 0:
            return SLACheckResult(
                task_id=task_id,
                status=SLAStatus.OK,
                expected_minutes=task.typical_minutes or 0,
                actual_minutes=0.0,
                percentage_used=0.0,
            )

        actual = elapsed_minutes(task, current)
        used = actual / task.typical_minutes

        def result(status: SLAStatus, emitted: bool = False) -> SLACheckResult:
            return SLACheckResult(
                task_id=task_id,
                status=status,
                expected_minutes=task.typical_minutes or 0,
                actual_minutes=actual,
                percentage_used=used,
                event_emitted=emitted,
            )

        if used >= self.settings.breach_threshold:
            if task.timeline.breached_at is not None:
                return result(SLAStatus.ALREADY_BREACHED)
            logger.info(
                "sla.breached",
                task_id=task_id,
                typical_minutes=task.typical_minutes,
                elapsed_minutes=round(actual),
            )
            payload = {
                "task_id": task_id,
                "org_id": task.org_id,
                "current_stage_key": task.stage_key,
                "expected_minutes": task.typical_minutes,
                "actual_minutes": actual,
            }
            await self.event_bus.emit(
                TASK_SLA_BREACHED, payload, EmitOptions(org_id=task.org_id)
            )
            task.timeline.breached_at = current
            await self._save_timeline(task)
            if self.job_queue is not None:
                await self.job_queue.enqueue(
                    TASK_EVENT_JOB,
                    {"event_type": TASK_SLA_BREACHED, **payload},
                    dedup_key=f"sla-breach:{task_id}",
                )
            return result(SLAStatus.BREACHED, emitted=True)

        if used >= self.settings.warning_threshold:
            if task.timeline.warned_at is not None:
                return result(SLAStatus.ALREADY_WARNED)
            logger.info("sla.warning", task_id=task_id, percentage_used=round(used * 100))
            await self.event_bus.emit(
                TASK_SLA_WARNING,
                {
                    "task_id": task_id,
                    "org_id": task.org_id,
                    "current_stage_key": task.stage_key,
                    "expected_minutes": task.typical_minutes,
                    "actual_minutes": actual,
                    "percentage_used": used * 100,
                },
                EmitOptions(org_id=task.org_id),
            )
            task.timeline.warned_at = current
            await self._save_timeline(task)
            return result(SLAStatus.WARNING, emitted=True)

        return result(SLAStatus.OK)

    async def check_all_pending(
        self, org_id: str | None = None, *, now: datetime | None = None
    ) -> SLACheckSummary:
        """Check every open task with an SLA; per-task errors are collected."""
        summary = SLACheckSummary()
        for task_id in await self._candidate_ids(org_id):
            summary.total_checked += 1
            try:
                checked = await self.check_task(task_id, now=now)
            except Exception as exc:
                summary.error_count += 1
                summary.errors.append({"task_id": task_id, "error": str(exc)})
                logger.error("sla.check_failed", task_id=task_id, error=str(exc))
                continue
            summary.record(checked.status)

        logger.info(
            "sla.check_completed",
            org_id=org_id,
            total=summary.total_checked,
            warnings=summary.warning_count,
            breaches=summary.breached_count,
            errors=summary.error_count,
        )
        return summary

    async def tasks_approaching_sla(
        self,
        org_id: str | None = None,
        threshold_pct: float = 70,
        *,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Open tasks at or above ``threshold_pct`` of their budget, worst first."""
        current = now or utc_now()
        approaching = []
        for record in await self.store.find(TASKS_COLLECTION, self._open_filter(org_id)):
            task = TaskInstance.from_record(record)
            if not task.typical_minutes or task.typical_minutes <= 0:
                continue
            actual = elapsed_minutes(task, current)
            percentage = actual / task.typical_minutes * 100
            if percentage >= threshold_pct:
                approaching.append(
                    {
                        "task_id": task.task_id,
                        "percentage_used": round(percentage),
                        "elapsed_minutes": round(actual),
                    }
                )
        approaching.sort(key=lambda item: item["percentage_used"], reverse=True)
        return approaching

    async def _candidate_ids(self, org_id: str | None) -> list[str]:
        filters = self._open_filter(org_id)
        filters["typical_minutes"] = {"$gt": 0}
        return [r["id"] for r in await self.store.find(TASKS_COLLECTION, filters)]

    @staticmethod
    def _open_filter(org_id: str | None) -> dict[str, Any]:
        filters: dict[str, Any] = {"status": {"$nin": _TERMINAL_STATUSES}}
        if org_id:
            filters["org_id"] = org_id
        return filters

    async def _save_timeline(self, task: TaskInstance) -> None:
        await self.store.update(
            TASKS_COLLECTION, task.task_id, {"timeline": task.timeline.to_dict()}
        )
