"""Task aggregate mutated by the task action executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from opsagent.core.utils.time import format_timestamp, parse_timestamp, utc_now

TASKS_COLLECTION = "tasks"
STAFF_COLLECTION = "users"
DECISION_LOG_COLLECTION = "decision_logs"

AGENT_HISTORY_LIMIT = 20


class TaskStatus(str, Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    BLOCKED = "BLOCKED"
    DONE = "DONE"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.CANCELLED)

    @property
    def is_open(self) -> bool:
        """Counts toward a staff member's workload."""
        return self in (TaskStatus.NEW, TaskStatus.IN_PROGRESS)


class AssignStrategy(str, Enum):
    LEAST_BUSY_IN_ROLE = "LEAST_BUSY_IN_ROLE"
    KEEP_EXISTING = "KEEP_EXISTING"
    UNASSIGN = "UNASSIGN"


@dataclass
class TaskOverride:
    """Human takeover flag; automated handlers must not mutate the task."""

    overridden: bool = False
    by: str | None = None
    at: datetime | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "overridden": self.overridden,
            "by": self.by,
            "at": format_timestamp(self.at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskOverride:
        data = data or {}
        return cls(
            overridden=bool(data.get("overridden", False)),
            by=data.get("by"),
            at=parse_timestamp(data.get("at")),
            reason=data.get("reason"),
        )


@dataclass
class AgentState:
    last_decision_id: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    def record(self, decision_id: str, summary: dict[str, Any]) -> None:
        """Remember a decision, keeping only the most recent entries."""
        self.last_decision_id = decision_id
        self.history.append({"decision_id": decision_id, **summary})
        if len(self.history) > AGENT_HISTORY_LIMIT:
            self.history = self.history[-AGENT_HISTORY_LIMIT:]

    def to_dict(self) -> dict[str, Any]:
        return {"last_decision_id": self.last_decision_id, "history": list(self.history)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AgentState:
        data = data or {}
        return cls(
            last_decision_id=data.get("last_decision_id"),
            history=list(data.get("history") or []),
        )


@dataclass
class TaskTimeline:
    started_at: datetime | None = None
    warned_at: datetime | None = None
    breached_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": format_timestamp(self.started_at),
            "warned_at": format_timestamp(self.warned_at),
            "breached_at": format_timestamp(self.breached_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskTimeline:
        data = data or {}
        return cls(
            started_at=parse_timestamp(data.get("started_at")),
            warned_at=parse_timestamp(data.get("warned_at")),
            breached_at=parse_timestamp(data.get("breached_at")),
        )


@dataclass
class TaskInstance:
    """Long-lived task record as seen by automated handlers."""

    task_id: str
    org_id: str
    status: TaskStatus = TaskStatus.NEW
    stage_key: str | None = None
    pipeline_key: str | None = None
    assigned_to_user_id: str | None = None
    tags: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    override: TaskOverride = field(default_factory=TaskOverride)
    agent_state: AgentState = field(default_factory=AgentState)
    typical_minutes: int | None = None
    timeline: TaskTimeline = field(default_factory=TaskTimeline)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_overridden(self) -> bool:
        return self.override.overridden

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "org_id": self.org_id,
            "status": self.status.value,
            "stage_key": self.stage_key,
            "pipeline_key": self.pipeline_key,
            "assigned_to_user_id": self.assigned_to_user_id,
            "tags": list(self.tags),
            "data": dict(self.data),
            "override": self.override.to_dict(),
            "agent_state": self.agent_state.to_dict(),
            "typical_minutes": self.typical_minutes,
            "timeline": self.timeline.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> TaskInstance:
        return cls(
            task_id=str(record["id"]),
            org_id=str(record.get("org_id", "")),
            status=TaskStatus(record.get("status", TaskStatus.NEW.value)),
            stage_key=record.get("stage_key"),
            pipeline_key=record.get("pipeline_key"),
            assigned_to_user_id=record.get("assigned_to_user_id"),
            tags=list(record.get("tags") or []),
            data=dict(record.get("data") or {}),
            override=TaskOverride.from_dict(record.get("override")),
            agent_state=AgentState.from_dict(record.get("agent_state")),
            typical_minutes=record.get("typical_minutes"),
            timeline=TaskTimeline.from_dict(record.get("timeline")),
            created_at=parse_timestamp(record.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(record.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class TaskActionContext:
    """Binds a task action run to one task of one organization."""

    task_id: str
    org_id: str
    correlation_id: str | None = None
    dry_run: bool = False


@dataclass(frozen=True)
class TaskActionResult:
    """Result of one task action; errors are carried as values."""

    success: bool
    action: str
    data: dict[str, Any] | None = None
    error: str | None = None
    execution_time: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "data": self.data,
            "error": self.error,
            "execution_time": self.execution_time,
        }
