"""
Domain Models

Pure data contracts exchanged between the decision engine, the executors,
the event bus and the background jobs.
"""

from opsagent.core.domain.actions import (
    ActionCondition,
    ActionResult,
    ActionType,
    AgentAction,
    ConditionType,
    DecisionOutcome,
    DecisionStatus,
    ExecutionError,
    ExecutionErrorCode,
    HandlerOutcome,
)
from opsagent.core.domain.agent_input import AgentInput, AgentInputSource
from opsagent.core.domain.decision import (
    AgentDecisionResult,
    DecisionContext,
    IntentClassification,
    OrgContext,
)
from opsagent.core.domain.events import DomainEvent, EmitResult
from opsagent.core.domain.task import TaskInstance, TaskStatus

__all__ = [
    "ActionCondition",
    "ActionResult",
    "ActionType",
    "AgentAction",
    "AgentDecisionResult",
    "AgentInput",
    "AgentInputSource",
    "ConditionType",
    "DecisionContext",
    "DecisionOutcome",
    "DecisionStatus",
    "DomainEvent",
    "EmitResult",
    "ExecutionError",
    "ExecutionErrorCode",
    "HandlerOutcome",
    "IntentClassification",
    "OrgContext",
    "TaskInstance",
    "TaskStatus",
]
