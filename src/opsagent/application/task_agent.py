"""
Application Layer - Task Agent

Reacts to task lifecycle events. For each event the agent loads the task,
asks the decision engine for follow-up task actions, records the decision
on the task and in ``decision_logs``, then applies the actions through the
``TaskActionExecutor``.

Tasks under human override are never sent to the LLM; the agent answers
with a NO_OP result instead.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from opsagent.application.decision_engine import DecisionEngine
from opsagent.application.task_action_executor import TaskActionExecutor
from opsagent.core.domain.actions import ActionType
from opsagent.core.domain.errors import LLMError
from opsagent.core.domain.events import (
    TASK_ASSIGNEE_CHANGED,
    TASK_CREATED,
    TASK_REPROCESS_REQUESTED,
    TASK_SLA_BREACHED,
    TASK_STAGE_CHANGED,
    TASK_STATUS_CHANGED,
    DomainEvent,
)
from opsagent.core.domain.task import (
    DECISION_LOG_COLLECTION,
    TASKS_COLLECTION,
    TaskActionContext,
    TaskActionResult,
    TaskInstance,
)
from opsagent.core.interfaces.event_bus import EventBusProtocol
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

AGENT_SOURCE = "agent"
OVERRIDE_REASON = "Task is under human override"

# task:override_set is deliberately absent: an override disables the agent.
TASK_EVENT_SUBSCRIPTIONS: tuple[str, ...] = (
    TASK_CREATED,
    TASK_STATUS_CHANGED,
    TASK_STAGE_CHANGED,
    TASK_ASSIGNEE_CHANGED,
    TASK_REPROCESS_REQUESTED,
    TASK_SLA_BREACHED,
)


@dataclass
class TaskAgentResult:
    """Outcome of handling one task event."""

    task_id: str
    event_type: str
    success: bool
    decision_id: str | None = None
    results: list[TaskActionResult] = field(default_factory=list)
    error: str | None = None

    @property
    def is_no_op(self) -> bool:
        return bool(self.results) and all(
            r.action == ActionType.NO_OP.value for r in self.results
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "event_type": self.event_type,
            "success": self.success,
            "decision_id": self.decision_id,
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
        }


class TaskAgent:
    """Event-driven agent for task records.

    ``subscriptions`` lists the bus events handled in process; event types
    delivered through the job queue must be left out of it.
    """

    def __init__(
        self,
        engine: DecisionEngine,
        executor: TaskActionExecutor,
        event_bus: EventBusProtocol,
        store: RecordStoreProtocol,
        *,
        dry_run: bool = False,
        subscriptions: Sequence[str] = TASK_EVENT_SUBSCRIPTIONS,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.event_bus = event_bus
        self.store = store
        self.dry_run = dry_run
        self.subscriptions = tuple(subscriptions)
        self._subscription_ids: list[str] = []
        self._stats: dict[str, int] = {
            "events_processed": 0,
            "decisions": 0,
            "no_op": 0,
            "failed": 0,
        }

    def start(self) -> None:
        if self._subscription_ids:
            logger.warning("task_agent.already_running")
            return
        for event_type in self.subscriptions:
            self._subscription_ids.append(self.event_bus.on(event_type, self.handle_event))
        logger.info("task_agent.started", subscribed_events=len(self.subscriptions))

    def stop(self) -> None:
        for subscription_id in self._subscription_ids:
            self.event_bus.off(subscription_id)
        self._subscription_ids.clear()
        logger.info("task_agent.stopped")

    async def handle_event(self, event: DomainEvent) -> TaskAgentResult | None:
        """Bus handler; ignores the agent's own events and events without a task."""
        if event.source == AGENT_SOURCE:
            return None
        task_id = event.payload.get("task_id")
        if not task_id:
            logger.warning("task_agent.event_without_task", event_type=event.type)
            return None
        org_id = event.org_id or str(event.payload.get("org_id", ""))
        try:
            return await self.process_task_event(
                str(task_id), org_id, event.type, event.payload, event_id=event.event_id
            )
        except LLMError as exc:
            self._stats["failed"] += 1
            logger.error(
                "task_agent.decision_failed",
                task_id=task_id,
                event_type=event.type,
                code=exc.code,
                error=str(exc),
            )
            return TaskAgentResult(
                task_id=str(task_id), event_type=event.type, success=False, error=str(exc)
            )

    async def process_task_event(
        self,
        task_id: str,
        org_id: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        event_id: str | None = None,
    ) -> TaskAgentResult:
        """Decide and act on one event for ``task_id``.

        Raises:
            LLMError: When the decision engine cannot reach the model.
        """
        self._stats["events_processed"] += 1
        log = logger.bind(task_id=task_id, event_type=event_type)

        record = await self.store.get(TASKS_COLLECTION, task_id)
        if record is None:
            log.warning("task_agent.task_not_found")
            return TaskAgentResult(
                task_id=task_id,
                event_type=event_type,
                success=False,
                error=f"Task not found: {task_id}",
            )
        task = TaskInstance.from_record(record)

        if task.is_overridden:
            log.info("task_agent.override_active", by=task.override.by)
            self._stats["no_op"] += 1
            return TaskAgentResult(
                task_id=task_id,
                event_type=event_type,
                success=True,
                results=[
                    TaskActionResult(
                        success=True,
                        action=ActionType.NO_OP.value,
                        data={"reason": OVERRIDE_REASON},
                    )
                ],
            )

        decision = await self.engine.decide_for_task(task, event_type, payload)
        self._stats["decisions"] += 1
        await self.store.create(
            DECISION_LOG_COLLECTION,
            {
                "id": decision.decision_id,
                "org_id": org_id or task.org_id,
                "task_id": task_id,
                "event_type": event_type,
                "event_id": event_id,
                "input_snapshot": {
                    "status": task.status.value,
                    "stage_key": task.stage_key,
                    "tags": list(task.tags),
                    "assigned_to_user_id": task.assigned_to_user_id,
                },
                "decision": decision.to_dict(),
                "created_at": utc_now().isoformat(),
            },
        )

        task.agent_state.record(
            decision.decision_id,
            {
                "event_type": event_type,
                "actions": [a.type for a in decision.actions],
                "at": utc_now().isoformat(),
            },
        )
        await self.store.update(
            TASKS_COLLECTION, task_id, {"agent_state": task.agent_state.to_dict()}
        )

        results = await self.executor.execute_actions(
            decision.actions,
            TaskActionContext(
                task_id=task_id,
                org_id=org_id or task.org_id,
                correlation_id=event_id,
                dry_run=self.dry_run,
            ),
        )
        success = all(r.success for r in results)
        if not success:
            self._stats["failed"] += 1
        elif all(r.action == ActionType.NO_OP.value for r in results):
            self._stats["no_op"] += 1

        await self.store.update(
            DECISION_LOG_COLLECTION,
            decision.decision_id,
            {
                "execution": {
                    "success": success,
                    "total_actions": len(results),
                    "successful_actions": sum(1 for r in results if r.success),
                    "results": [r.to_dict() for r in results],
                    "completed_at": utc_now().isoformat(),
                }
            },
        )
        log.info(
            "task_agent.event_processed",
            decision_id=decision.decision_id,
            success=success,
            actions=[r.action for r in results],
        )
        return TaskAgentResult(
            task_id=task_id,
            event_type=event_type,
            success=success,
            decision_id=decision.decision_id,
            results=results,
        )

    def stats(self) -> dict[str, int]:
        return dict(self._stats)
