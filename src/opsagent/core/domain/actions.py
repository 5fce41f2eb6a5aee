"""Action vocabulary, execution results and decision outcomes.

Actions are value objects produced by the decision engine. Executors
consume them and report one ``ActionResult`` per attempted action; a full
run is summarized in a ``DecisionOutcome``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from opsagent.core.utils.time import utc_now

if TYPE_CHECKING:
    from opsagent.core.interfaces.event_bus import EventBusProtocol

DEFAULT_PRIORITY = 3
MIN_PRIORITY = 1
MAX_PRIORITY = 5


class ActionType(str, Enum):
    """Known action tags.

    The first group acts on intake/calendar/notification systems and is
    executed by the ``ActionExecutor``; the second group mutates a single
    task and is executed by the ``TaskActionExecutor``. ``ESCALATE`` is
    shared by both.
    """

    ASSIGN_PIPELINE = "ASSIGN_PIPELINE"
    CREATE_EVENT = "CREATE_EVENT"
    UPDATE_EVENT = "UPDATE_EVENT"
    CANCEL_EVENT = "CANCEL_EVENT"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    TRIGGER_AUTOMATION = "TRIGGER_AUTOMATION"
    ESCALATE = "ESCALATE"
    NO_ACTION = "NO_ACTION"

    SET_STATUS = "SET_STATUS"
    SET_STAGE = "SET_STAGE"
    ASSIGN_STAFF = "ASSIGN_STAFF"
    TAG_TASK = "TAG_TASK"
    PING_CUSTOMER = "PING_CUSTOMER"
    ADD_INTERNAL_NOTE = "ADD_INTERNAL_NOTE"
    NO_OP = "NO_OP"


GENERIC_ACTION_TYPES: frozenset[str] = frozenset(
    {
        ActionType.ASSIGN_PIPELINE.value,
        ActionType.CREATE_EVENT.value,
        ActionType.UPDATE_EVENT.value,
        ActionType.CANCEL_EVENT.value,
        ActionType.SEND_NOTIFICATION.value,
        ActionType.TRIGGER_AUTOMATION.value,
        ActionType.ESCALATE.value,
        ActionType.NO_ACTION.value,
    }
)

TASK_ACTION_TYPES: frozenset[str] = frozenset(
    {
        ActionType.SET_STATUS.value,
        ActionType.SET_STAGE.value,
        ActionType.ASSIGN_STAFF.value,
        ActionType.TAG_TASK.value,
        ActionType.PING_CUSTOMER.value,
        ActionType.ADD_INTERNAL_NOTE.value,
        ActionType.ESCALATE.value,
        ActionType.NO_OP.value,
    }
)


def action_key(action_type: str | ActionType) -> str:
    """Normalize an action tag to its plain string form."""
    if isinstance(action_type, ActionType):
        return action_type.value
    return str(action_type)


def clamp_priority(value: Any) -> int:
    """Coerce a priority into the 1-5 range, defaulting to 3."""
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


class ConditionType(str, Enum):
    """Kinds of pre-conditions an action may carry."""

    TIME_RANGE = "time_range"
    USER_AVAILABLE = "user_available"
    SLOT_AVAILABLE = "slot_available"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ActionCondition:
    """Guard evaluated right before an action is dispatched."""

    type: ConditionType
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "params": self.params}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionCondition:
        return cls(type=ConditionType(data["type"]), params=dict(data.get("params") or {}))


@dataclass(frozen=True)
class AgentAction:
    """A single typed unit of work.

    ``type`` is stored as a plain string so that tags outside the known
    vocabulary can still flow to an executor and be reported as failures.
    """

    type: str
    params: dict[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    requires_confirmation: bool = False
    delay_ms: int | None = None
    condition: ActionCondition | None = None
    fallback: AgentAction | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", action_key(self.type))
        object.__setattr__(self, "priority", clamp_priority(self.priority))

    @property
    def known_type(self) -> ActionType | None:
        """The matching ``ActionType`` or None for unknown tags."""
        try:
            return ActionType(self.type)
        except ValueError:
            return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "params": self.params,
            "priority": self.priority,
            "requires_confirmation": self.requires_confirmation,
        }
        if self.delay_ms is not None:
            data["delay_ms"] = self.delay_ms
        if self.condition is not None:
            data["condition"] = self.condition.to_dict()
        if self.fallback is not None:
            data["fallback"] = self.fallback.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentAction:
        condition_raw = data.get("condition")
        fallback_raw = data.get("fallback")
        delay = data.get("delay_ms")
        return cls(
            type=str(data.get("type", "")),
            params=dict(data.get("params") or {}),
            priority=data.get("priority", DEFAULT_PRIORITY),
            requires_confirmation=bool(data.get("requires_confirmation", False)),
            delay_ms=int(delay) if delay is not None else None,
            condition=ActionCondition.from_dict(condition_raw) if condition_raw else None,
            fallback=cls.from_dict(fallback_raw) if fallback_raw else None,
        )


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one action execution (final attempt only)."""

    action: str
    success: bool
    data: dict[str, Any] | None = None
    execution_time: int = 0
    message: str | None = None

    @property
    def skipped(self) -> bool:
        return bool(self.data and self.data.get("skipped"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "data": self.data,
            "execution_time": self.execution_time,
            "message": self.message,
        }


class ExecutionErrorCode(str, Enum):
    """Machine-readable reasons attached to an ``ExecutionError``."""

    ACTION_FAILED = "ACTION_FAILED"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    REJECTED_BY_USER = "REJECTED_BY_USER"
    DECISION_FAILED = "DECISION_FAILED"


@dataclass(frozen=True)
class ExecutionError:
    """A failure recorded on a ``DecisionOutcome``."""

    action: str
    code: ExecutionErrorCode
    message: str
    retryable: bool = False
    retry_delay_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "retry_delay_ms": self.retry_delay_ms,
        }


class DecisionStatus(str, Enum):
    """Lifecycle state of a decision and its execution."""

    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"


@dataclass(frozen=True)
class DecisionOutcome:
    """Aggregate result of executing an action list."""

    status: DecisionStatus
    execution_time: int = 0
    results: tuple[ActionResult, ...] = ()
    errors: tuple[ExecutionError, ...] = ()
    rolled_back: bool = False
    completed_at: datetime = field(default_factory=utc_now)

    @property
    def succeeded(self) -> bool:
        return self.status == DecisionStatus.EXECUTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "execution_time": self.execution_time,
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "rolled_back": self.rolled_back,
            "completed_at": self.completed_at.isoformat(),
        }


RollbackFn = Callable[[], Awaitable[None]]


@dataclass
class HandlerOutcome:
    """Value returned by an action handler.

    Handlers set ``rollbackable`` and supply ``rollback`` when their side
    effect can be compensated. In dry-run mode they must return
    ``success=True`` with ``data={"dry_run": True, **params}`` before
    touching anything real.
    """

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    rollbackable: bool = False
    rollback: RollbackFn | None = None


@dataclass
class ActionExecutionContext:
    """Per-run context handed to every handler."""

    execution_id: str
    dry_run: bool = False
    org_id: str | None = None
    correlation_id: str | None = None
    previous_results: list[ActionResult] = field(default_factory=list)
    event_bus: EventBusProtocol | None = None


@dataclass(frozen=True)
class RollbackEntry:
    """Compensating closure for one executed, rollback-capable action."""

    action: AgentAction
    rollback: RollbackFn
    timestamp: datetime = field(default_factory=utc_now)
