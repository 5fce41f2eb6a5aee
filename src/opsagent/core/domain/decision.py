"""Decision context and decision result models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from opsagent.core.domain.actions import (
    DEFAULT_PRIORITY,
    GENERIC_ACTION_TYPES,
    AgentAction,
)
from opsagent.core.domain.agent_input import AgentInput

ORGANIZATIONS_COLLECTION = "organizations"
PIPELINES_COLLECTION = "pipelines"


class Intent(str, Enum):
    """Intents recognized by keyword classification."""

    SALES_INQUIRY = "SALES_INQUIRY"
    SUPPORT_REQUEST = "SUPPORT_REQUEST"
    BILLING_QUESTION = "BILLING_QUESTION"
    PARTNERSHIP = "PARTNERSHIP"
    SCHEDULING = "SCHEDULING"
    GENERAL = "GENERAL"


@dataclass(frozen=True)
class PipelineSummary:
    id: str
    name: str
    category: str = ""
    stages: tuple[str, ...] = ()
    active_item_count: int = 0
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "stages": list(self.stages),
            "active_item_count": self.active_item_count,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class UserSummary:
    id: str
    name: str
    email: str = ""
    role: str = ""
    is_active: bool = True
    current_workload: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "current_workload": self.current_workload,
        }


@dataclass(frozen=True)
class OrgSettings:
    """Per-organization settings; empty ``enabled_actions`` enables everything."""

    timezone: str = "UTC"
    business_hours: dict[str, str] = field(
        default_factory=lambda: {"start": "09:00", "end": "17:00"}
    )
    enabled_actions: tuple[str, ...] = ()
    default_pipeline_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> OrgSettings:
        data = data or {}
        hours = data.get("business_hours")
        return cls(
            timezone=str(data.get("timezone") or "UTC"),
            business_hours=dict(hours) if isinstance(hours, dict) else cls().business_hours,
            enabled_actions=tuple(str(a) for a in data.get("enabled_actions") or ()),
            default_pipeline_id=data.get("default_pipeline_id"),
        )


@dataclass(frozen=True)
class OrgContext:
    """Organizational data the decision engine may reference."""

    org_id: str
    pipelines: tuple[PipelineSummary, ...] = ()
    users: tuple[UserSummary, ...] = ()
    settings: OrgSettings = field(default_factory=OrgSettings)


@dataclass(frozen=True)
class HistoricalContext:
    recent_decisions: tuple[dict[str, Any], ...] = ()
    related_records: tuple[dict[str, Any], ...] = ()
    prior_interactions: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class DecisionContext:
    """Read-only aggregate passed to the decision engine."""

    input: AgentInput
    org: OrgContext
    history: HistoricalContext | None = None
    available_actions: frozenset[str] = GENERIC_ACTION_TYPES


@dataclass(frozen=True)
class AgentDecisionResult:
    """Typed output of the decision engine."""

    intent: str
    confidence: float
    reasoning: str
    actions: tuple[AgentAction, ...] = ()
    requires_approval: bool = False
    priority: int = DEFAULT_PRIORITY
    warnings: tuple[str, ...] = ()
    alternatives: tuple[dict[str, Any], ...] = ()
    decision_id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "intent": self.intent,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "actions": [a.to_dict() for a in self.actions],
            "requires_approval": self.requires_approval,
            "priority": self.priority,
            "warnings": list(self.warnings),
            "alternatives": list(self.alternatives),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentDecisionResult:
        return cls(
            intent=str(data.get("intent", Intent.GENERAL.value)),
            confidence=float(data.get("confidence", 0.0)),
            reasoning=str(data.get("reasoning", "")),
            actions=tuple(AgentAction.from_dict(a) for a in data.get("actions", [])),
            requires_approval=bool(data.get("requires_approval", False)),
            priority=int(data.get("priority", DEFAULT_PRIORITY)),
            warnings=tuple(data.get("warnings", [])),
            alternatives=tuple(data.get("alternatives", [])),
            decision_id=str(data.get("decision_id") or uuid4().hex),
        )


@dataclass(frozen=True)
class IntentClassification:
    intent: str
    confidence: float
    entities: dict[str, Any] = field(default_factory=dict)
    urgency: int = 2
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class LLMResponse:
    """Raw completion returned by an LLM client."""

    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    finish_reason: str | None = None
    latency_ms: int = 0
