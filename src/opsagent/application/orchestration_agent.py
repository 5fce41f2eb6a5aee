"""
Application Layer - Orchestration Agent

Entry point of the decision-action pipeline for inbound work:

1. Build a ``DecisionContext`` from the record store (pipelines, staff,
   organization settings, recent decisions).
2. Ask the decision engine for a decision.
3. Route it: auto-execute through the ``ActionExecutor``, hold it for
   human approval, or reject it for low confidence.
4. Log the decision to the ``decision_logs`` collection.

Retryable LLM errors propagate to the caller so that the surrounding
worker can retry the input later. Non-retryable LLM errors end the run
with a FAILED outcome and an ``agent:escalation_required`` event.
"""

from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import structlog

from opsagent.application.action_executor import ActionExecutor, ExecutionOptions
from opsagent.application.decision_engine import DecisionEngine
from opsagent.core.domain.actions import (
    GENERIC_ACTION_TYPES,
    ActionType,
    DecisionOutcome,
    DecisionStatus,
    ExecutionError,
    ExecutionErrorCode,
)
from opsagent.core.domain.agent_input import AgentInput, AgentInputSource
from opsagent.core.domain.config_schema import OpsAgentSettings
from opsagent.core.domain.decision import (
    ORGANIZATIONS_COLLECTION,
    PIPELINES_COLLECTION,
    AgentDecisionResult,
    DecisionContext,
    HistoricalContext,
    Intent,
    OrgContext,
    OrgSettings,
    PipelineSummary,
    UserSummary,
)
from opsagent.core.domain.errors import LLMError, OrchestratorError, error_payload
from opsagent.core.domain.events import (
    CALENDAR_REMINDER_DUE,
    DECISION_MADE,
    DECISION_PENDING,
    EMAIL_RECEIVED,
    ESCALATION_REQUIRED,
    INTAKE_CREATED,
    INTAKE_UPDATED,
    PIPELINE_ITEM_MOVED,
    SCHEDULE_TRIGGERED,
    WEBHOOK_BOOKING_REQUESTED,
    WEBHOOK_FORM_SUBMITTED,
    DomainEvent,
    EmitOptions,
)
from opsagent.core.domain.task import (
    DECISION_LOG_COLLECTION,
    STAFF_COLLECTION,
    TASKS_COLLECTION,
    TaskStatus,
)
from opsagent.core.interfaces.event_bus import EventBusProtocol
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

AGENT_SOURCE = "agent"

DEFAULT_SUBSCRIBED_EVENTS: tuple[str, ...] = (
    INTAKE_CREATED,
    INTAKE_UPDATED,
    WEBHOOK_FORM_SUBMITTED,
    WEBHOOK_BOOKING_REQUESTED,
    EMAIL_RECEIVED,
    PIPELINE_ITEM_MOVED,
    CALENDAR_REMINDER_DUE,
    SCHEDULE_TRIGGERED,
)

_MINUTE = 60.0
_HOUR = 3600.0


@dataclass(frozen=True)
class ProcessResult:
    """What happened to one input (or one approval)."""

    decision: AgentDecisionResult
    outcome: DecisionOutcome
    decision_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "decision": self.decision.to_dict(),
            "outcome": self.outcome.to_dict(),
        }


@dataclass
class PendingDecision:
    """A decision held until a human approves or rejects it."""

    decision: AgentDecisionResult
    agent_input: AgentInput
    org_id: str
    created_at: datetime = field(default_factory=utc_now)
    expires_at: datetime = field(default_factory=utc_now)

    @property
    def decision_id(self) -> str:
        return self.decision.decision_id

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "org_id": self.org_id,
            "intent": self.decision.intent,
            "confidence": self.decision.confidence,
            "actions": [a.to_dict() for a in self.decision.actions],
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class _RateWindow:
    minute: deque[float] = field(default_factory=deque)
    hour: deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        while self.minute and now - self.minute[0] >= _MINUTE:
            self.minute.popleft()
        while self.hour and now - self.hour[0] >= _HOUR:
            self.hour.popleft()


def _summarize_decision_log(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": record.get("id"),
        "decision_type": record.get("decision_type"),
        "input_type": record.get("input_type"),
        "confidence": record.get("confidence"),
        "status": record.get("status"),
        "created_at": record.get("created_at"),
    }


class OrchestrationAgent:
    """Decides and acts on inbound inputs for one deployment.

    Args:
        engine: Decision engine (LLM plus fallback).
        executor: Action executor for generic actions.
        event_bus: Bus for escalation/pending events and subscriptions.
        store: Record store with pipelines, staff and decision logs.
        settings: Root settings; thresholds, rate limits and TTLs are read
            from it.
        org_id: Default organization for inputs that carry none.
        dry_run: Overrides ``settings.executor.dry_run`` when given.
    """

    def __init__(
        self,
        engine: DecisionEngine,
        executor: ActionExecutor,
        event_bus: EventBusProtocol,
        store: RecordStoreProtocol,
        settings: OpsAgentSettings | None = None,
        *,
        org_id: str | None = None,
        dry_run: bool | None = None,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.event_bus = event_bus
        self.store = store
        self.settings = settings or OpsAgentSettings()
        self.org_id = org_id
        self.dry_run = self.settings.executor.dry_run if dry_run is None else dry_run

        self._pending: dict[str, PendingDecision] = {}
        self._rate_windows: dict[str, _RateWindow] = {}
        self._subscription_ids: list[str] = []
        self._stats: dict[str, int] = {
            "total_decisions": 0,
            "executed": 0,
            "failed": 0,
            "rejected": 0,
            "pending": 0,
            "events_processed": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._subscription_ids)

    def start(self, event_types: tuple[str, ...] = DEFAULT_SUBSCRIBED_EVENTS) -> None:
        """Subscribe ``handle_event`` to the inbound trigger events."""
        if self.is_running:
            logger.warning("orchestrator.already_running")
            return
        for event_type in event_types:
            self._subscription_ids.append(self.event_bus.on(event_type, self.handle_event))
        logger.info("orchestrator.started", subscribed_events=len(event_types))

    def stop(self) -> None:
        for subscription_id in self._subscription_ids:
            self.event_bus.off(subscription_id)
        self._subscription_ids.clear()
        logger.info("orchestrator.stopped", total_decisions=self._stats["total_decisions"])

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(
        self,
        agent_input: AgentInput,
        *,
        org_id: str | None = None,
        dry_run: bool | None = None,
    ) -> ProcessResult:
        """Decide on ``agent_input`` and route the decision.

        Raises:
            OrchestratorError: If no organization is known for the input or
                the organization exceeded its decision rate.
            LLMError: For retryable LLM failures.
        """
        org = self._resolve_org(agent_input, org_id)
        run_dry = self.dry_run if dry_run is None else dry_run
        correlation_id = agent_input.correlation_id or f"proc_{uuid4().hex[:12]}"
        log = logger.bind(
            org_id=org,
            input_id=agent_input.input_id,
            correlation_id=correlation_id,
            dry_run=run_dry,
        )
        log.info("orchestrator.processing", source=agent_input.source.value, type=agent_input.type)

        self._check_rate_limit(org)
        context = await self.build_context(agent_input, org)

        try:
            decision = await self.engine.make_decision(context)
        except LLMError as exc:
            if exc.retryable:
                log.warning("orchestrator.decision_retryable_error", code=exc.code)
                raise
            return await self._decision_failed(agent_input, org, correlation_id, exc)

        self._record_rate(org)
        self._stats["total_decisions"] += 1

        if self.engine.should_auto_execute(decision):
            log.info(
                "orchestrator.auto_executing",
                decision_id=decision.decision_id,
                confidence=decision.confidence,
                action_count=len(decision.actions),
            )
            outcome = await self.executor.execute(
                decision.actions,
                ExecutionOptions(
                    execution_id=decision.decision_id,
                    correlation_id=correlation_id,
                    org_id=org,
                    dry_run=run_dry,
                    decision_id=decision.decision_id,
                ),
            )
            self._stats["executed" if outcome.status != DecisionStatus.FAILED else "failed"] += 1
        elif self.engine.requires_approval(decision):
            outcome = await self._hold_for_approval(decision, agent_input, org, correlation_id)
        else:
            log.warning(
                "orchestrator.decision_rejected",
                decision_id=decision.decision_id,
                confidence=decision.confidence,
            )
            self._stats["rejected"] += 1
            outcome = DecisionOutcome(
                status=DecisionStatus.REJECTED,
                errors=(
                    ExecutionError(
                        action=ActionType.NO_ACTION.value,
                        code=ExecutionErrorCode.LOW_CONFIDENCE,
                        message="Confidence below threshold",
                    ),
                ),
            )

        await self._log_decision(agent_input, org, decision, outcome)
        return ProcessResult(decision=decision, outcome=outcome, decision_id=decision.decision_id)

    async def handle_event(self, event: DomainEvent) -> ProcessResult | None:
        """Bus handler: turn an event into an input and process it.

        Events emitted by the agent itself are ignored. Rate-limited events
        are logged and dropped.
        """
        if event.source == AGENT_SOURCE:
            return None
        self._stats["events_processed"] += 1
        try:
            return await self.process(self.event_to_input(event), org_id=event.org_id)
        except OrchestratorError as exc:
            logger.warning(
                "orchestrator.event_dropped",
                event_type=event.type,
                event_id=event.event_id,
                code=exc.code,
            )
            return None

    @staticmethod
    def event_to_input(event: DomainEvent) -> AgentInput:
        try:
            source = AgentInputSource(event.source.upper())
        except ValueError:
            source = (
                AgentInputSource.WORKER
                if event.source in ("system", AGENT_SOURCE)
                else AgentInputSource.API
            )
        metadata: dict[str, Any] = {"event_id": event.event_id, **event.metadata}
        if event.org_id:
            metadata["org_id"] = event.org_id
        return AgentInput(
            source=source,
            type=event.type,
            raw_content=json.dumps(event.payload, default=str),
            structured_data=dict(event.payload),
            metadata=metadata,
            timestamp=event.timestamp,
            correlation_id=event.correlation_id,
        )

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def pending_decisions(self, org_id: str | None = None) -> list[PendingDecision]:
        """Unexpired pending decisions, oldest first."""
        self.expire_pending()
        return sorted(
            (p for p in self._pending.values() if org_id is None or p.org_id == org_id),
            key=lambda p: p.created_at,
        )

    def expire_pending(self) -> int:
        now = utc_now()
        expired = [key for key, p in self._pending.items() if p.is_expired(now)]
        for key in expired:
            del self._pending[key]
        self._stats["pending"] -= len(expired)
        if expired:
            logger.info("orchestrator.pending_expired", count=len(expired))
        return len(expired)

    async def approve(self, decision_id: str, user_id: str) -> ProcessResult:
        """Execute a held decision on behalf of ``user_id``.

        Raises:
            OrchestratorError: If the decision is unknown or expired.
        """
        pending = self._take_pending(decision_id)
        logger.info("orchestrator.decision_approved", decision_id=decision_id, user_id=user_id)
        outcome = await self.executor.execute(
            pending.decision.actions,
            ExecutionOptions(
                execution_id=decision_id,
                correlation_id=pending.agent_input.correlation_id,
                org_id=pending.org_id,
                dry_run=self.dry_run,
                decision_id=decision_id,
            ),
        )
        self._stats["executed" if outcome.status != DecisionStatus.FAILED else "failed"] += 1
        await self._update_decision_log(
            decision_id, outcome, {"approved_by": user_id, "approved_at": utc_now().isoformat()}
        )
        return ProcessResult(decision=pending.decision, outcome=outcome, decision_id=decision_id)

    async def reject(self, decision_id: str, user_id: str, reason: str = "") -> ProcessResult:
        """Discard a held decision.

        Raises:
            OrchestratorError: If the decision is unknown or expired.
        """
        pending = self._take_pending(decision_id)
        logger.info(
            "orchestrator.decision_rejected_by_user",
            decision_id=decision_id,
            user_id=user_id,
            reason=reason,
        )
        self._stats["rejected"] += 1
        outcome = DecisionOutcome(
            status=DecisionStatus.REJECTED,
            errors=(
                ExecutionError(
                    action=ActionType.NO_ACTION.value,
                    code=ExecutionErrorCode.REJECTED_BY_USER,
                    message=reason or "Rejected by user",
                ),
            ),
        )
        await self._update_decision_log(
            decision_id, outcome, {"rejected_by": user_id, "rejection_reason": reason}
        )
        return ProcessResult(decision=pending.decision, outcome=outcome, decision_id=decision_id)

    def _take_pending(self, decision_id: str) -> PendingDecision:
        pending = self._pending.pop(decision_id, None)
        if pending is None:
            raise OrchestratorError(
                f"Pending decision not found: {decision_id}",
                code="decision_not_found",
                details={"decision_id": decision_id},
            )
        self._stats["pending"] -= 1
        if pending.is_expired():
            raise OrchestratorError(
                f"Pending decision expired: {decision_id}",
                code="decision_expired",
                details={"decision_id": decision_id, "expires_at": pending.expires_at.isoformat()},
            )
        return pending

    async def _hold_for_approval(
        self,
        decision: AgentDecisionResult,
        agent_input: AgentInput,
        org_id: str,
        correlation_id: str,
    ) -> DecisionOutcome:
        ttl = timedelta(minutes=self.settings.decision.approval_ttl_minutes)
        now = utc_now()
        self._pending[decision.decision_id] = PendingDecision(
            decision=decision,
            agent_input=agent_input,
            org_id=org_id,
            created_at=now,
            expires_at=now + ttl,
        )
        self._stats["pending"] += 1
        logger.info(
            "orchestrator.decision_pending",
            decision_id=decision.decision_id,
            confidence=decision.confidence,
            priority=decision.priority,
        )
        await self.event_bus.emit(
            DECISION_PENDING,
            {
                "decision_id": decision.decision_id,
                "intent": decision.intent,
                "confidence": decision.confidence,
                "priority": decision.priority,
                "action_count": len(decision.actions),
                "expires_at": (now + ttl).isoformat(),
            },
            EmitOptions(source=AGENT_SOURCE, correlation_id=correlation_id, org_id=org_id),
        )
        return DecisionOutcome(status=DecisionStatus.REQUIRES_APPROVAL)

    async def _decision_failed(
        self,
        agent_input: AgentInput,
        org_id: str,
        correlation_id: str,
        error: LLMError,
    ) -> ProcessResult:
        logger.error(
            "orchestrator.decision_failed",
            org_id=org_id,
            input_id=agent_input.input_id,
            code=error.code,
            provider=error.provider,
            error=str(error),
        )
        self._stats["failed"] += 1
        decision = AgentDecisionResult(
            intent=Intent.GENERAL.value,
            confidence=0.0,
            reasoning=f"Decision failed: {error}",
            requires_approval=True,
        )
        outcome = DecisionOutcome(
            status=DecisionStatus.FAILED,
            errors=(
                ExecutionError(
                    action=ActionType.NO_ACTION.value,
                    code=ExecutionErrorCode.DECISION_FAILED,
                    message=str(error),
                ),
            ),
        )
        await self.event_bus.emit(
            ESCALATION_REQUIRED,
            error_payload(
                error,
                {
                    "decision_id": decision.decision_id,
                    "input_id": agent_input.input_id,
                    "input_type": agent_input.type,
                },
            ),
            EmitOptions(source=AGENT_SOURCE, correlation_id=correlation_id, org_id=org_id),
        )
        await self._log_decision(agent_input, org_id, decision, outcome)
        return ProcessResult(decision=decision, outcome=outcome, decision_id=decision.decision_id)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def build_context(self, agent_input: AgentInput, org_id: str) -> DecisionContext:
        """Assemble org and history context for the engine from the store."""
        org_record = await self.store.get(ORGANIZATIONS_COLLECTION, org_id) or {}
        org_settings = OrgSettings.from_dict(org_record.get("settings"))

        pipelines = tuple(
            PipelineSummary(
                id=str(record["id"]),
                name=str(record.get("name", "")),
                category=str(record.get("category") or ""),
                stages=tuple(record.get("stages") or ()),
                active_item_count=int(record.get("active_item_count", 0)),
                is_active=bool(record.get("is_active", True)),
            )
            for record in await self.store.find(
                PIPELINES_COLLECTION, {"org_id": org_id, "is_active": {"$ne": False}}
            )
        )

        users = []
        open_statuses = [s.value for s in TaskStatus if s.is_open]
        for record in await self.store.find(
            STAFF_COLLECTION, {"org_id": org_id, "is_active": {"$ne": False}}
        ):
            workload = await self.store.count(
                TASKS_COLLECTION,
                {
                    "org_id": org_id,
                    "assigned_to_user_id": record["id"],
                    "status": {"$in": open_statuses},
                },
            )
            users.append(
                UserSummary(
                    id=str(record["id"]),
                    name=str(record.get("name") or "Unknown"),
                    email=str(record.get("email") or ""),
                    role=str(record.get("role") or ""),
                    current_workload=workload,
                )
            )

        recent = await self.store.find(
            DECISION_LOG_COLLECTION,
            {"org_id": org_id},
            limit=self.settings.orchestrator.recent_decision_limit,
            order_by="-created_at",
        )

        available = GENERIC_ACTION_TYPES
        if org_settings.enabled_actions:
            available = GENERIC_ACTION_TYPES & frozenset(org_settings.enabled_actions)

        return DecisionContext(
            input=agent_input,
            org=OrgContext(
                org_id=org_id,
                pipelines=pipelines,
                users=tuple(users),
                settings=org_settings,
            ),
            history=HistoricalContext(
                recent_decisions=tuple(_summarize_decision_log(r) for r in recent)
            ),
            available_actions=available,
        )

    def _resolve_org(self, agent_input: AgentInput, org_id: str | None) -> str:
        resolved = org_id or agent_input.metadata.get("org_id") or self.org_id
        if not resolved:
            raise OrchestratorError(
                "No organization given for input",
                code="missing_org",
                details={"input_id": agent_input.input_id},
            )
        return str(resolved)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def _check_rate_limit(self, org_id: str, *, now: float | None = None) -> None:
        current = time.monotonic() if now is None else now
        window = self._rate_windows.setdefault(org_id, _RateWindow())
        window.prune(current)
        limits = self.settings.orchestrator
        if (
            len(window.minute) >= limits.max_decisions_per_minute
            or len(window.hour) >= limits.max_decisions_per_hour
        ):
            logger.warning(
                "orchestrator.rate_limited",
                org_id=org_id,
                decisions_last_minute=len(window.minute),
                decisions_last_hour=len(window.hour),
            )
            raise OrchestratorError(
                f"Rate limit exceeded for organization {org_id}",
                code="rate_limited",
                details={
                    "org_id": org_id,
                    "per_minute": limits.max_decisions_per_minute,
                    "per_hour": limits.max_decisions_per_hour,
                },
            )

    def _record_rate(self, org_id: str, *, now: float | None = None) -> None:
        current = time.monotonic() if now is None else now
        window = self._rate_windows.setdefault(org_id, _RateWindow())
        window.minute.append(current)
        window.hour.append(current)

    # ------------------------------------------------------------------
    # Decision log
    # ------------------------------------------------------------------

    async def _log_decision(
        self,
        agent_input: AgentInput,
        org_id: str,
        decision: AgentDecisionResult,
        outcome: DecisionOutcome,
    ) -> None:
        record = {
            "id": decision.decision_id,
            "org_id": org_id,
            "input_source": agent_input.source.value,
            "input_type": agent_input.type,
            "input": agent_input.to_dict(),
            "intent": decision.intent,
            "confidence": decision.confidence,
            "reasoning": decision.reasoning,
            "decision_type": (
                decision.actions[0].type if decision.actions else ActionType.NO_ACTION.value
            ),
            "actions": [a.to_dict() for a in decision.actions],
            "warnings": list(decision.warnings),
            "status": outcome.status.value,
            "execution_time": outcome.execution_time,
            "error_message": outcome.errors[0].message if outcome.errors else None,
            "created_at": utc_now().isoformat(),
            "executed_at": (
                outcome.completed_at.isoformat()
                if outcome.status == DecisionStatus.EXECUTED
                else None
            ),
        }
        await self.store.create(DECISION_LOG_COLLECTION, record)
        await self.event_bus.emit(
            DECISION_MADE,
            {
                "decision_id": decision.decision_id,
                "decision_type": record["decision_type"],
                "status": outcome.status.value,
                "confidence": decision.confidence,
            },
            EmitOptions(
                source=AGENT_SOURCE,
                correlation_id=agent_input.correlation_id,
                org_id=org_id,
            ),
        )

    async def _update_decision_log(
        self, decision_id: str, outcome: DecisionOutcome, extra: dict[str, Any]
    ) -> None:
        fields = {
            "status": outcome.status.value,
            "execution_time": outcome.execution_time,
            "error_message": outcome.errors[0].message if outcome.errors else None,
            **extra,
        }
        if outcome.status == DecisionStatus.EXECUTED:
            fields["executed_at"] = outcome.completed_at.isoformat()
        await self.store.update(DECISION_LOG_COLLECTION, decision_id, fields)

    def stats(self) -> dict[str, Any]:
        return {**self._stats, "running": self.is_running}
