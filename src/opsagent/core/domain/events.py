"""Domain event envelope and well-known event names.

Events are the only externally observable output of the pipeline: a
named type, a JSON-serializable payload and correlation data. Names use
the ``<aggregate>:<what_happened>`` convention.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from opsagent.core.utils.time import utc_now

WILDCARD = "*"

# Executor summary
ACTION_EXECUTED = "agent:action_executed"
ESCALATION_REQUIRED = "agent:escalation_required"
DECISION_PENDING = "agent:decision_pending"
DECISION_MADE = "agent:decision_made"

# Inbound triggers consumed by the orchestration agent
INTAKE_CREATED = "intake:created"
INTAKE_UPDATED = "intake:updated"
WEBHOOK_FORM_SUBMITTED = "webhook:form_submitted"
WEBHOOK_BOOKING_REQUESTED = "webhook:booking_requested"
EMAIL_RECEIVED = "email:received"
CALENDAR_REMINDER_DUE = "calendar:reminder_due"
SCHEDULE_TRIGGERED = "schedule:triggered"

# Generic action handlers
INTAKE_ASSIGNED = "intake:assigned"
INTAKE_ESCALATED = "intake:escalated"
CALENDAR_EVENT_CREATED = "calendar:event_created"
CALENDAR_EVENT_UPDATED = "calendar:event_updated"
CALENDAR_EVENT_CANCELLED = "calendar:event_cancelled"
NOTIFICATION_QUEUED = "notification:queued"
AUTOMATION_TRIGGERED = "automation:triggered"

# Task aggregate
TASK_CREATED = "task:created"
TASK_STATUS_CHANGED = "task:status_changed"
TASK_STAGE_CHANGED = "task:stage_changed"
TASK_ASSIGNEE_CHANGED = "task:assignee_changed"
TASK_TAGS_CHANGED = "task:tags_changed"
TASK_NOTE_ADDED = "task:note_added"
TASK_CUSTOMER_PINGED = "task:customer_pinged"
TASK_OVERRIDE_SET = "task:override_set"
TASK_REPROCESS_REQUESTED = "task:reprocess_requested"
TASK_SLA_WARNING = "task:sla_warning"
TASK_SLA_BREACHED = "task:sla_breached"

# Pipeline aggregate
PIPELINE_ITEM_MOVED = "pipeline:item_moved"


@dataclass(frozen=True)
class DomainEvent:
    """A single emitted event.

    Attributes:
        type: Event name, e.g. ``"task:status_changed"``.
        payload: JSON-serializable event data.
        timestamp: Emission time.
        source: Emitting component (``"system"``, ``"agent"``, ...).
        event_id: Unique id of this emission.
        correlation_id: Id linking the event to the run that caused it.
        org_id: Tenant the event belongs to.
        metadata: Free-form extra data (replay markers, etc.).
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    source: str = "system"
    event_id: str = field(default_factory=lambda: f"evt_{uuid4().hex}")
    correlation_id: str | None = None
    org_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "event_id": self.event_id,
            "correlation_id": self.correlation_id,
            "org_id": self.org_id,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class EmitOptions:
    source: str = "system"
    correlation_id: str | None = None
    org_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HandlerInvocation:
    subscription_id: str
    success: bool
    error: str | None = None
    execution_time_ms: int = 0


@dataclass(frozen=True)
class EmitResult:
    """Fan-out report for one emission."""

    event_type: str
    event_id: str
    timestamp: datetime
    handlers_invoked: int = 0
    results: tuple[HandlerInvocation, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def all_succeeded(self) -> bool:
        return not self.errors
