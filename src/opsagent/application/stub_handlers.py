"""
Null-object handlers for the generic action vocabulary.

These handlers perform no real side effect: they announce what would have
happened on the event bus and report success. They exist for local runs,
the CLI and tests. Production wiring registers real handlers per action
type on ``ActionExecutorBuilder`` and only falls back to these when
``with_stub_handlers()`` is requested explicitly.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

import structlog

from opsagent.core.domain.actions import (
    ActionExecutionContext,
    ActionType,
    AgentAction,
    HandlerOutcome,
)
from opsagent.core.domain.events import (
    AUTOMATION_TRIGGERED,
    CALENDAR_EVENT_CANCELLED,
    CALENDAR_EVENT_CREATED,
    CALENDAR_EVENT_UPDATED,
    INTAKE_ASSIGNED,
    INTAKE_ESCALATED,
    NOTIFICATION_QUEUED,
    EmitOptions,
)
from opsagent.core.interfaces.action_handler import ActionHandler

logger = structlog.get_logger(__name__)


def _dry_run(action: AgentAction) -> HandlerOutcome:
    return HandlerOutcome(success=True, data={"dry_run": True, **action.params})


async def _announce(
    context: ActionExecutionContext, event_type: str, payload: dict[str, Any]
) -> None:
    if context.event_bus is None:
        return
    await context.event_bus.emit(
        event_type,
        payload,
        EmitOptions(
            source="agent",
            correlation_id=context.correlation_id,
            org_id=context.org_id,
            metadata={"execution_id": context.execution_id},
        ),
    )


class StubActionHandlers:
    """Event-emitting stand-ins for ASSIGN_PIPELINE through NO_ACTION."""

    async def assign_pipeline(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        await _announce(context, INTAKE_ASSIGNED, dict(action.params))

        async def rollback() -> None:
            logger.info(
                "stub_handlers.assign_pipeline_rolled_back",
                intake_id=action.params.get("intake_id"),
            )

        return HandlerOutcome(
            success=True,
            data={
                "intake_id": action.params.get("intake_id"),
                "pipeline_id": action.params.get("pipeline_id"),
            },
            rollbackable=True,
            rollback=rollback,
        )

    async def create_event(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        event_id = f"cal_{uuid4().hex[:12]}"
        await _announce(context, CALENDAR_EVENT_CREATED, {"event_id": event_id, **action.params})

        async def rollback() -> None:
            await _announce(
                context,
                CALENDAR_EVENT_CANCELLED,
                {"event_id": event_id, "reason": "rollback"},
            )

        return HandlerOutcome(
            success=True,
            data={"event_id": event_id},
            rollbackable=True,
            rollback=rollback,
        )

    async def update_event(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        await _announce(context, CALENDAR_EVENT_UPDATED, dict(action.params))
        return HandlerOutcome(success=True, data={"event_id": action.params.get("event_id")})

    async def cancel_event(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        await _announce(context, CALENDAR_EVENT_CANCELLED, dict(action.params))
        return HandlerOutcome(success=True, data={"event_id": action.params.get("event_id")})

    async def send_notification(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        notification_id = f"ntf_{uuid4().hex[:12]}"
        await _announce(
            context, NOTIFICATION_QUEUED, {"notification_id": notification_id, **action.params}
        )
        # a sent notification cannot be recalled
        return HandlerOutcome(success=True, data={"notification_id": notification_id})

    async def trigger_automation(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        await _announce(context, AUTOMATION_TRIGGERED, dict(action.params))
        return HandlerOutcome(success=True, data={"workflow_id": action.params.get("workflow_id")})

    async def escalate(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        await _announce(context, INTAKE_ESCALATED, dict(action.params))
        return HandlerOutcome(success=True, data={"escalated": True})

    async def no_action(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        if context.dry_run:
            return _dry_run(action)
        return HandlerOutcome(
            success=True,
            data={"no_action_reason": action.params.get("reason", "No action required")},
        )

    def as_mapping(self) -> dict[str, ActionHandler]:
        return {
            ActionType.ASSIGN_PIPELINE.value: self.assign_pipeline,
            ActionType.CREATE_EVENT.value: self.create_event,
            ActionType.UPDATE_EVENT.value: self.update_event,
            ActionType.CANCEL_EVENT.value: self.cancel_event,
            ActionType.SEND_NOTIFICATION.value: self.send_notification,
            ActionType.TRIGGER_AUTOMATION.value: self.trigger_automation,
            ActionType.ESCALATE.value: self.escalate,
            ActionType.NO_ACTION.value: self.no_action,
        }
