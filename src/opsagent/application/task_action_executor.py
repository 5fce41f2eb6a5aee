"""
Task Action Executor

Applies task-scoped actions (SET_STATUS, SET_STAGE, ASSIGN_STAFF, TAG_TASK,
PING_CUSTOMER, ADD_INTERNAL_NOTE, ESCALATE, NO_OP) to a single task record.
Each mutating handler reads the current task, computes the change, writes
it and emits one domain event. Mutations are committed one by one; a batch
is not transactional and is never rolled back.

Failures, including unknown action types and missing tasks, are returned
as ``TaskActionResult`` values so that one bad entry cannot crash a batch.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from opsagent.core.domain.actions import ActionType, AgentAction
from opsagent.core.domain.events import (
    PIPELINE_ITEM_MOVED,
    TASK_ASSIGNEE_CHANGED,
    TASK_CUSTOMER_PINGED,
    TASK_NOTE_ADDED,
    TASK_STAGE_CHANGED,
    TASK_STATUS_CHANGED,
    TASK_TAGS_CHANGED,
    EmitOptions,
)
from opsagent.core.domain.task import (
    STAFF_COLLECTION,
    TASKS_COLLECTION,
    AssignStrategy,
    TaskActionContext,
    TaskActionResult,
    TaskInstance,
    TaskStatus,
)
from opsagent.core.interfaces.event_bus import EventBusProtocol
from opsagent.core.interfaces.job_queue import JobQueueProtocol
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.core.utils.time import monotonic_ms, utc_now

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"
SYSTEM_RULE_REASON = "SYSTEM_RULE"
PIPELINE_MOVE_REASON = "AUTO_RULE"
ESCALATED_TAG = "escalated"
PING_CUSTOMER_JOB = "ping-customer"

_Handler = Callable[[AgentAction, TaskActionContext, int], Awaitable[TaskActionResult]]


def merge_tags(current: Sequence[str], add: Sequence[str], remove: Sequence[str]) -> list[str]:
    """Union ``add`` into ``current`` then drop ``remove``.

    Existing tags keep their order, new tags are appended in the order given,
    duplicates are collapsed.
    """
    merged = list(dict.fromkeys([*current, *add]))
    removed = set(remove)
    return [tag for tag in merged if tag not in removed]


class TaskActionExecutor:
    """Executes task-scoped actions against the record store."""

    def __init__(
        self,
        store: RecordStoreProtocol,
        event_bus: EventBusProtocol,
        job_queue: JobQueueProtocol | None = None,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._job_queue = job_queue
        self._handlers: dict[str, _Handler] = {
            ActionType.SET_STATUS.value: self._set_status,
            ActionType.SET_STAGE.value: self._set_stage,
            ActionType.ASSIGN_STAFF.value: self._assign_staff,
            ActionType.TAG_TASK.value: self._tag_task,
            ActionType.PING_CUSTOMER.value: self._ping_customer,
            ActionType.ADD_INTERNAL_NOTE.value: self._add_internal_note,
            ActionType.ESCALATE.value: self._escalate,
            ActionType.NO_OP.value: self._no_op,
        }

    @property
    def supported_action_types(self) -> list[str]:
        return list(self._handlers)

    async def execute_action(
        self, action: AgentAction, context: TaskActionContext
    ) -> TaskActionResult:
        """Execute one action; never raises for business failures."""
        started = monotonic_ms()
        log = logger.bind(task_id=context.task_id, action=action.type, dry_run=context.dry_run)
        log.debug("task_action.started", params=action.params)

        handler = self._handlers.get(action.type)
        if handler is None:
            log.warning("task_action.unknown_type")
            return TaskActionResult(
                success=False,
                action=action.type,
                error=f"Unknown action type: {action.type}",
                execution_time=monotonic_ms() - started,
            )

        try:
            if action.type != ActionType.NO_OP.value and not context.dry_run:
                if await self._is_overridden(context.task_id):
                    log.info("task_action.override_active")
                    return await self._no_op(
                        AgentAction(
                            type=ActionType.NO_OP,
                            params={
                                "reason": "Task is under human override",
                                "suppressed_action": action.type,
                            },
                        ),
                        context,
                        started,
                    )
            return await handler(action, context, started)
        except Exception as exc:
            log.error("task_action.failed", error=str(exc), error_type=type(exc).__name__)
            return TaskActionResult(
                success=False,
                action=action.type,
                error=str(exc) or type(exc).__name__,
                execution_time=monotonic_ms() - started,
            )

    async def execute_actions(
        self, actions: Sequence[AgentAction], context: TaskActionContext
    ) -> list[TaskActionResult]:
        """Run actions in order, stopping at the first failure other than NO_OP."""
        results: list[TaskActionResult] = []
        for action in actions:
            result = await self.execute_action(action, context)
            results.append(result)
            if not result.success and action.type != ActionType.NO_OP.value:
                logger.warning(
                    "task_action.batch_stopped",
                    task_id=context.task_id,
                    action=action.type,
                    error=result.error,
                    remaining=len(actions) - len(results),
                )
                break
        return results

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _set_status(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        raw = action.params.get("to_status")
        try:
            to_status = TaskStatus(str(raw))
        except ValueError:
            return self._failure(action, f"Invalid status: {raw}", started)

        if context.dry_run:
            return self._success(action, {"dry_run": True, "to_status": to_status.value}, started)

        task = await self._load(context)
        if task is None:
            return self._not_found(action, context, started)

        from_status = task.status
        if from_status == to_status:
            return self._success(
                action,
                {"from_status": from_status.value, "to_status": to_status.value, "unchanged": True},
                started,
            )

        await self._write(context.task_id, {"status": to_status.value})
        await self._emit(
            TASK_STATUS_CHANGED,
            {
                "task_id": context.task_id,
                "org_id": context.org_id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "reason": SYSTEM_RULE_REASON,
                "by": SYSTEM_ACTOR,
            },
            context,
        )
        logger.info(
            "task_action.status_changed",
            task_id=context.task_id,
            from_status=from_status.value,
            to_status=to_status.value,
        )
        return self._success(
            action, {"from_status": from_status.value, "to_status": to_status.value}, started
        )

    async def _set_stage(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        to_stage = action.params.get("to_stage_key")
        if not to_stage:
            return self._failure(action, "SET_STAGE requires to_stage_key", started)
        to_stage = str(to_stage)

        if context.dry_run:
            return self._success(action, {"dry_run": True, "to_stage_key": to_stage}, started)

        task = await self._load(context)
        if task is None:
            return self._not_found(action, context, started)

        from_stage = task.stage_key
        if from_stage == to_stage:
            return self._success(
                action,
                {"from_stage_key": from_stage, "to_stage_key": to_stage, "unchanged": True},
                started,
            )

        await self._write(context.task_id, {"stage_key": to_stage})
        await self._emit(
            TASK_STAGE_CHANGED,
            {
                "task_id": context.task_id,
                "org_id": context.org_id,
                "from_stage_key": from_stage,
                "to_stage_key": to_stage,
                "by": SYSTEM_ACTOR,
            },
            context,
        )
        if task.pipeline_key:
            await self._emit(
                PIPELINE_ITEM_MOVED,
                {
                    "pipeline_key": task.pipeline_key,
                    "org_id": context.org_id,
                    "task_id": context.task_id,
                    "from_stage_key": from_stage,
                    "to_stage_key": to_stage,
                    "by": SYSTEM_ACTOR,
                    "reason": PIPELINE_MOVE_REASON,
                },
                context,
            )
        logger.info(
            "task_action.stage_changed",
            task_id=context.task_id,
            from_stage_key=from_stage,
            to_stage_key=to_stage,
            pipeline_key=task.pipeline_key,
        )
        return self._success(
            action,
            {
                "from_stage_key": from_stage,
                "to_stage_key": to_stage,
                "pipeline_key": task.pipeline_key,
            },
            started,
        )

    async def _assign_staff(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        raw = action.params.get("strategy")
        try:
            strategy = AssignStrategy(str(raw))
        except ValueError:
            return self._failure(action, f"Invalid assignment strategy: {raw}", started)

        if context.dry_run:
            return self._success(action, {"dry_run": True, "strategy": strategy.value}, started)

        task = await self._load(context)
        if task is None:
            return self._not_found(action, context, started)

        from_user = task.assigned_to_user_id
        if strategy == AssignStrategy.LEAST_BUSY_IN_ROLE:
            to_user = await self.find_least_busy_staff(context.org_id, action.params.get("role"))
        elif strategy == AssignStrategy.KEEP_EXISTING:
            to_user = from_user
        else:
            to_user = None

        await self._write(context.task_id, {"assigned_to_user_id": to_user})
        await self._emit(
            TASK_ASSIGNEE_CHANGED,
            {
                "task_id": context.task_id,
                "org_id": context.org_id,
                "from_user_id": from_user,
                "to_user_id": to_user,
                "mode": "AUTO",
            },
            context,
        )
        logger.info(
            "task_action.staff_assigned",
            task_id=context.task_id,
            from_user_id=from_user,
            to_user_id=to_user,
            strategy=strategy.value,
        )
        return self._success(
            action,
            {"from_user_id": from_user, "to_user_id": to_user, "strategy": strategy.value},
            started,
        )

    async def _tag_task(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        add = [str(t) for t in action.params.get("add") or []]
        remove = [str(t) for t in action.params.get("remove") or []]

        if context.dry_run:
            return self._success(action, {"dry_run": True, "add": add, "remove": remove}, started)

        task = await self._load(context)
        if task is None:
            return self._not_found(action, context, started)

        new_tags = merge_tags(task.tags, add, remove)
        added = [t for t in new_tags if t not in task.tags]
        removed = [t for t in task.tags if t not in new_tags]

        await self._write(context.task_id, {"tags": new_tags})
        await self._emit(
            TASK_TAGS_CHANGED,
            {
                "task_id": context.task_id,
                "org_id": context.org_id,
                "added": added,
                "removed": removed,
                "tags": new_tags,
            },
            context,
        )
        return self._success(
            action, {"added": added, "removed": removed, "new_tags": new_tags}, started
        )

    async def _ping_customer(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        channel = str(action.params.get("channel", "email"))
        template_hint = action.params.get("template_hint")

        if context.dry_run:
            return self._success(
                action,
                {"dry_run": True, "channel": channel, "template_hint": template_hint},
                started,
            )

        job_id: str | None = None
        if self._job_queue is not None:
            job_id = await self._job_queue.enqueue(
                PING_CUSTOMER_JOB,
                {
                    "task_id": context.task_id,
                    "org_id": context.org_id,
                    "channel": channel,
                    "template_hint": template_hint,
                },
            )
        await self._emit(
            TASK_CUSTOMER_PINGED,
            {
                "task_id": context.task_id,
                "org_id": context.org_id,
                "channel": channel,
                "template_hint": template_hint,
                "job_id": job_id,
            },
            context,
        )
        return self._success(
            action,
            {
                "channel": channel,
                "template_hint": template_hint,
                "status": "queued",
                "job_id": job_id,
            },
            started,
        )

    async def _add_internal_note(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        note = action.params.get("note")
        if not note:
            return self._failure(action, "ADD_INTERNAL_NOTE requires note", started)

        if context.dry_run:
            return self._success(action, {"dry_run": True, "note": note}, started)

        task = await self._load(context)
        if task is None:
            return self._not_found(action, context, started)

        entry = {"note": str(note), "timestamp": utc_now().isoformat(), "by": SYSTEM_ACTOR}
        notes = [*task.data.get("notes", []), entry]
        await self._write(context.task_id, {"data": {**task.data, "notes": notes}})
        await self._emit(
            TASK_NOTE_ADDED,
            {"task_id": context.task_id, "org_id": context.org_id, "note": entry},
            context,
        )
        return self._success(action, {"note_added": True, "total_notes": len(notes)}, started)

    async def _escalate(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        reason = action.params.get("reason")
        target_role = action.params.get("target_role")

        if context.dry_run:
            return self._success(
                action,
                {"dry_run": True, "reason": reason, "target_role": target_role},
                started,
            )

        task = await self._load(context)
        if task is None:
            return self._not_found(action, context, started)

        from_status = task.status
        tags = task.tags if ESCALATED_TAG in task.tags else [*task.tags, ESCALATED_TAG]
        escalation = {
            "reason": reason,
            "target_role": target_role,
            "escalated_at": utc_now().isoformat(),
        }
        await self._write(
            context.task_id,
            {
                "status": TaskStatus.NEEDS_REVIEW.value,
                "tags": tags,
                "data": {**task.data, "escalation": escalation},
            },
        )
        if from_status != TaskStatus.NEEDS_REVIEW:
            await self._emit(
                TASK_STATUS_CHANGED,
                {
                    "task_id": context.task_id,
                    "org_id": context.org_id,
                    "from_status": from_status.value,
                    "to_status": TaskStatus.NEEDS_REVIEW.value,
                    "reason": SYSTEM_RULE_REASON,
                    "by": SYSTEM_ACTOR,
                },
                context,
            )
        logger.info(
            "task_action.escalated",
            task_id=context.task_id,
            reason=reason,
            target_role=target_role,
        )
        return self._success(
            action,
            {
                "from_status": from_status.value,
                "to_status": TaskStatus.NEEDS_REVIEW.value,
                "reason": reason,
                "target_role": target_role,
            },
            started,
        )

    async def _no_op(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        reason = action.params.get("reason")
        logger.info("task_action.no_op", task_id=context.task_id, reason=reason)
        return TaskActionResult(
            success=True,
            action=ActionType.NO_OP.value,
            data=dict(action.params),
            execution_time=monotonic_ms() - started,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def find_least_busy_staff(self, org_id: str, role: str | None = None) -> str | None:
        """Active staff member with the fewest open tasks; first seen wins ties."""
        filters: dict[str, Any] = {"org_id": org_id, "is_active": True}
        if role:
            filters["role"] = role
        staff = await self._store.find(STAFF_COLLECTION, filters)
        if not staff:
            logger.warning("task_action.no_staff_found", org_id=org_id, role=role)
            return None

        open_statuses = [s.value for s in TaskStatus if s.is_open]
        best_id: str | None = None
        best_count: int | None = None
        for member in staff:
            count = await self._store.count(
                TASKS_COLLECTION,
                {
                    "org_id": org_id,
                    "assigned_to_user_id": member["id"],
                    "status": {"$in": open_statuses},
                },
            )
            if best_count is None or count < best_count:
                best_id, best_count = member["id"], count
        return best_id

    async def _load(self, context: TaskActionContext) -> TaskInstance | None:
        record = await self._store.get(TASKS_COLLECTION, context.task_id)
        return TaskInstance.from_record(record) if record else None

    async def _is_overridden(self, task_id: str) -> bool:
        record = await self._store.get(TASKS_COLLECTION, task_id)
        return bool(record and (record.get("override") or {}).get("overridden"))

    async def _write(self, task_id: str, fields: dict[str, Any]) -> None:
        await self._store.update(
            TASKS_COLLECTION, task_id, {**fields, "updated_at": utc_now().isoformat()}
        )

    async def _emit(
        self, event_type: str, payload: dict[str, Any], context: TaskActionContext
    ) -> None:
        await self._event_bus.emit(
            event_type,
            payload,
            EmitOptions(
                source="agent",
                correlation_id=context.correlation_id,
                org_id=context.org_id,
            ),
        )

    @staticmethod
    def _success(action: AgentAction, data: dict[str, Any], started: int) -> TaskActionResult:
        return TaskActionResult(
            success=True,
            action=action.type,
            data=data,
            execution_time=monotonic_ms() - started,
        )

    @staticmethod
    def _failure(action: AgentAction, error: str, started: int) -> TaskActionResult:
        return TaskActionResult(
            success=False,
            action=action.type,
            error=error,
            execution_time=monotonic_ms() - started,
        )

    def _not_found(
        self, action: AgentAction, context: TaskActionContext, started: int
    ) -> TaskActionResult:
        return self._failure(action, f"Task not found: {context.task_id}", started)
