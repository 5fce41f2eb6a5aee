"""
Decision Engine

Turns a decision context into a validated ``AgentDecisionResult``. The
LLM proposes intent, confidence and actions as JSON; the engine parses and
sanitizes that proposal, drops actions it cannot trust, and routes the
result through the confidence thresholds. When the completion cannot be
used at all, a rule-based fallback decision is produced instead. Fallback
decisions always require human approval.

The engine has no side effects: it never executes actions and never
writes to a store.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from opsagent.core.domain.actions import (
    DEFAULT_PRIORITY,
    TASK_ACTION_TYPES,
    ActionCondition,
    ActionType,
    AgentAction,
    ConditionType,
    clamp_priority,
)
from opsagent.core.domain.agent_input import AgentInput
from opsagent.core.domain.config_schema import DecisionSettings
from opsagent.core.domain.decision import (
    AgentDecisionResult,
    DecisionContext,
    Intent,
    IntentClassification,
)
from opsagent.core.domain.errors import LLMValidationError
from opsagent.core.domain.task import AssignStrategy, TaskInstance, TaskStatus
from opsagent.core.interfaces.llm import LLMClientProtocol
from opsagent.core.prompts.decision_prompts import (
    INTENT_SYSTEM_PROMPT,
    ORCHESTRATION_SYSTEM_PROMPT,
    TASK_AGENT_SYSTEM_PROMPT,
    build_decision_prompt,
    build_intent_prompt,
    build_task_prompt,
)
from opsagent.core.utils.time import parse_timestamp
from opsagent.infrastructure.llm.base_client import extract_json

logger = structlog.get_logger(__name__)

# Ordered: the first intent with a matching keyword wins.
INTENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    Intent.SALES_INQUIRY.value: (
        "price", "pricing", "cost", "quote", "buy", "purchase", "demo", "trial",
    ),
    Intent.SUPPORT_REQUEST.value: (
        "help", "support", "issue", "problem", "error", "bug", "not working", "broken",
    ),
    Intent.BILLING_QUESTION.value: (
        "billing", "invoice", "payment", "charge", "subscription", "refund",
    ),
    Intent.PARTNERSHIP.value: (
        "partnership", "partner", "reseller", "affiliate", "integrate", "api",
    ),
    Intent.SCHEDULING.value: (
        "schedule", "meeting", "appointment", "calendar", "book", "slot", "availability",
    ),
}

URGENCY_KEYWORDS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (5, ("urgent", "emergency", "asap", "immediately", "critical", "down", "outage")),
    (3, ("important", "soon", "priority", "deadline")),
    (1, ("whenever", "no rush", "low priority", "when possible")),
)
DEFAULT_URGENCY = 2
ESCALATION_URGENCY = 4

REQUIRED_PARAMS: dict[str, tuple[str, ...]] = {
    ActionType.ASSIGN_PIPELINE.value: ("intake_id", "pipeline_id"),
    ActionType.CREATE_EVENT.value: ("title", "start_time", "end_time"),
    ActionType.UPDATE_EVENT.value: ("event_id",),
    ActionType.CANCEL_EVENT.value: ("event_id",),
    ActionType.SEND_NOTIFICATION.value: ("subject", "body"),
    ActionType.TRIGGER_AUTOMATION.value: ("workflow_id",),
    ActionType.ESCALATE.value: ("reason",),
    ActionType.SET_STATUS.value: ("to_status",),
    ActionType.SET_STAGE.value: ("to_stage_key",),
    ActionType.ASSIGN_STAFF.value: ("strategy",),
    ActionType.ADD_INTERNAL_NOTE.value: ("note",),
}


class DecisionParseError(ValueError):
    """The completion could not be turned into a decision."""


@dataclass
class DecisionValidation:
    """Outcome of validating a raw decision payload."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    decision: AgentDecisionResult | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.decision is not None


def detect_intent(content: str) -> str:
    lowered = content.lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return intent
    return Intent.GENERAL.value


def detect_urgency(content: str) -> int:
    """Urgency 1-5 from keywords; 2 when nothing matches."""
    lowered = content.lower()
    for level, keywords in URGENCY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return level
    return DEFAULT_URGENCY


def extract_keywords(content: str) -> list[str]:
    lowered = content.lower()
    return [
        keyword
        for keywords in INTENT_KEYWORDS.values()
        for keyword in keywords
        if keyword in lowered
    ]


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _is_timestamp(value: Any) -> bool:
    """Absent bounds are fine; present ones must parse."""
    try:
        parse_timestamp(value)
    except (TypeError, ValueError):
        return False
    return True


class DecisionEngine:
    """LLM-backed decision maker with rule-based fallback.

    Args:
        llm_client: Completion client; its errors propagate unchanged.
        settings: Confidence thresholds. Defaults apply when omitted.
    """

    def __init__(
        self,
        llm_client: LLMClientProtocol,
        settings: DecisionSettings | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.settings = settings or DecisionSettings()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def make_decision(self, context: DecisionContext) -> AgentDecisionResult:
        """Ask the LLM for a decision about ``context.input``.

        Raises:
            LLMError: When the completion itself fails. Unusable completions
                never raise; they produce a fallback decision.
        """
        log = logger.bind(
            input_id=context.input.input_id,
            org_id=context.org.org_id,
            correlation_id=context.input.correlation_id,
        )
        log.info("decision_engine.decision_requested", source=context.input.source.value)

        response = await self.llm_client.complete(
            build_decision_prompt(context),
            system_prompt=ORCHESTRATION_SYSTEM_PROMPT,
        )
        decision = self.process_llm_response(response.content, context)
        log.info(
            "decision_engine.decision_made",
            decision_id=decision.decision_id,
            intent=decision.intent,
            confidence=decision.confidence,
            action_count=len(decision.actions),
            requires_approval=decision.requires_approval,
        )
        return decision

    def process_llm_response(
        self, raw_response: str | dict[str, Any], context: DecisionContext
    ) -> AgentDecisionResult:
        """Parse, validate and threshold a completion; fall back when unusable."""
        try:
            parsed = self._parse_response(raw_response)
        except DecisionParseError as exc:
            logger.warning("decision_engine.parse_failed", error=str(exc))
            return self.create_fallback_decision(context, f"Parse error: {exc}")

        validation = self.validate_decision(parsed, context.available_actions)
        decision = validation.decision
        if decision is None or not validation.is_valid:
            logger.warning("decision_engine.validation_failed", errors=validation.errors)
            return self.create_fallback_decision(
                context, f"Validation failed: {', '.join(validation.errors)}"
            )
        if validation.warnings:
            logger.warning("decision_engine.decision_warnings", warnings=validation.warnings)
        return self.apply_thresholds(decision)

    def validate_decision(
        self, raw: dict[str, Any], available_actions: frozenset[str]
    ) -> DecisionValidation:
        """Check the payload shape and sanitize it into a decision.

        Structural problems (non-numeric confidence, ``actions`` not a list)
        are errors. Individual actions that are unknown, unavailable or miss
        required parameters are dropped with a warning.
        """
        result = DecisionValidation()

        intent = raw.get("intent")
        if not isinstance(intent, str) or not intent.strip():
            result.warnings.append('Missing "intent", defaulting to GENERAL')
            intent = Intent.GENERAL.value

        confidence = raw.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            result.errors.append('Missing or invalid "confidence" field')
        else:
            confidence = max(0.0, min(1.0, float(confidence)))

        raw_actions = raw.get("actions", [])
        if not isinstance(raw_actions, list):
            result.errors.append('Invalid "actions" field (expected a list)')

        if result.errors:
            return result

        reasoning = raw.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            result.warnings.append('Missing "reasoning" field')
            reasoning = "No reasoning provided"

        actions: list[AgentAction] = []
        for index, raw_action in enumerate(raw_actions):
            action, problem = self.validate_action(raw_action, index, available_actions)
            if problem:
                result.warnings.append(problem)
            if action is not None:
                actions.append(action)

        alternatives = tuple(
            {
                "intent": str(alt["intent"]),
                "confidence": float(alt["confidence"]),
                "reason": str(alt.get("reason", "No reason provided")),
            }
            for alt in raw.get("alternatives") or []
            if isinstance(alt, dict)
            and isinstance(alt.get("intent"), str)
            and isinstance(alt.get("confidence"), (int, float))
        )
        extra_warnings = [str(w) for w in raw.get("warnings") or [] if w]

        result.decision = AgentDecisionResult(
            intent=intent.strip(),
            confidence=confidence,
            reasoning=reasoning,
            actions=tuple(actions),
            requires_approval=bool(raw.get("requires_approval", False)),
            priority=clamp_priority(raw.get("priority", DEFAULT_PRIORITY)),
            warnings=tuple(extra_warnings + result.warnings),
            alternatives=alternatives,
        )
        return result

    def validate_action(
        self, raw_action: Any, index: int, available_actions: frozenset[str]
    ) -> tuple[AgentAction | None, str | None]:
        """Return the sanitized action, or None with the reason it was dropped."""
        if not isinstance(raw_action, dict):
            return None, f"Action {index}: invalid format"
        action_type = raw_action.get("type")
        if not isinstance(action_type, str) or not action_type:
            return None, f'Action {index}: missing "type"'
        try:
            ActionType(action_type)
        except ValueError:
            return None, f'Action {index}: unknown action type "{action_type}"'
        if action_type not in available_actions:
            return None, f'Action {index}: action type "{action_type}" is not available'

        params = raw_action.get("params", {})
        if not isinstance(params, dict):
            return None, f'Action {index}: "params" must be an object'
        missing = self.validate_action_params(action_type, params)
        if missing:
            return None, f"Action {index}: {action_type} {'; '.join(missing)}"

        condition = None
        raw_condition = raw_action.get("condition")
        if isinstance(raw_condition, dict):
            try:
                condition = ActionCondition.from_dict(raw_condition)
            except (KeyError, ValueError):
                logger.debug("decision_engine.condition_ignored", index=index)
        if condition is not None and condition.type == ConditionType.TIME_RANGE:
            bad_bounds = [
                name for name in ("start", "end") if not _is_timestamp(condition.params.get(name))
            ]
            if bad_bounds:
                return None, (
                    f"Action {index}: time_range {', '.join(bad_bounds)} "
                    "must be an ISO-8601 timestamp"
                )

        delay = raw_action.get("delay_ms")
        return (
            AgentAction(
                type=action_type,
                params=params,
                priority=raw_action.get("priority", DEFAULT_PRIORITY),
                requires_confirmation=bool(raw_action.get("requires_confirmation", False)),
                delay_ms=int(delay) if isinstance(delay, (int, float)) and delay > 0 else None,
                condition=condition,
            ),
            None,
        )

    @staticmethod
    def validate_action_params(action_type: str, params: dict[str, Any]) -> list[str]:
        """List the problems with ``params`` for ``action_type``."""
        problems = [
            f'requires "{name}"'
            for name in REQUIRED_PARAMS.get(action_type, ())
            if not _is_present(params.get(name))
        ]
        if action_type == ActionType.SEND_NOTIFICATION.value and not (
            params.get("recipient_ids") or params.get("recipient_emails")
        ):
            problems.append('requires "recipient_ids" or "recipient_emails"')
        if action_type == ActionType.SET_STATUS.value and _is_present(params.get("to_status")):
            if params["to_status"] not in {s.value for s in TaskStatus}:
                problems.append(f'has invalid "to_status" {params["to_status"]!r}')
        if action_type == ActionType.ASSIGN_STAFF.value and _is_present(params.get("strategy")):
            if params["strategy"] not in {s.value for s in AssignStrategy}:
                problems.append(f'has invalid "strategy" {params["strategy"]!r}')
        return problems

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def apply_thresholds(self, decision: AgentDecisionResult) -> AgentDecisionResult:
        if decision.requires_approval:
            return decision
        if any(action.requires_confirmation for action in decision.actions):
            return replace(decision, requires_approval=True)
        if decision.confidence < self.settings.auto_execute_threshold:
            return replace(decision, requires_approval=True)
        return decision

    def should_auto_execute(self, decision: AgentDecisionResult) -> bool:
        if decision.requires_approval:
            return False
        return decision.confidence >= self.settings.auto_execute_threshold

    def requires_approval(self, decision: AgentDecisionResult) -> bool:
        if decision.requires_approval:
            return True
        return (
            self.settings.require_approval_threshold
            <= decision.confidence
            < self.settings.auto_execute_threshold
        )

    def should_reject(self, decision: AgentDecisionResult) -> bool:
        return (
            not decision.requires_approval
            and decision.confidence < self.settings.require_approval_threshold
        )

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def create_fallback_decision(
        self, context: DecisionContext, reason: str
    ) -> AgentDecisionResult:
        """Rule-based decision used when the LLM output is unusable."""
        content = context.input.raw_content
        intent = detect_intent(content)
        urgency = detect_urgency(content)
        logger.info("decision_engine.fallback_used", reason=reason, intent=intent, urgency=urgency)

        actions: list[AgentAction] = []
        if ActionType.ASSIGN_PIPELINE.value in context.available_actions:
            pipeline_id = self._select_fallback_pipeline(context, intent)
            if pipeline_id:
                actions.append(
                    AgentAction(
                        type=ActionType.ASSIGN_PIPELINE,
                        params={
                            "intake_id": (context.input.structured_data or {}).get(
                                "intake_id", "unknown"
                            ),
                            "pipeline_id": pipeline_id,
                            "priority": urgency,
                            "notes": f"[FALLBACK] {reason}. Intent detected: {intent}",
                        },
                        priority=urgency,
                        requires_confirmation=True,
                    )
                )

        if urgency >= ESCALATION_URGENCY and ActionType.ESCALATE.value in context.available_actions:
            actions.append(
                AgentAction(
                    type=ActionType.ESCALATE,
                    params={
                        "reason": f"High urgency item routed via fallback: {reason}",
                        "level": 1,
                        "priority": "high",
                    },
                    priority=5,
                )
            )

        if not actions:
            actions.append(
                AgentAction(
                    type=ActionType.NO_ACTION,
                    params={"reason": f"Fallback with no suitable action: {reason}"},
                )
            )

        return AgentDecisionResult(
            intent=intent,
            confidence=self.settings.fallback_confidence,
            reasoning=f"[FALLBACK] {reason}. Rule-based detection used.",
            actions=tuple(actions),
            requires_approval=True,
            priority=urgency,
            warnings=(f"Decision made via fallback logic: {reason}",),
        )

    @staticmethod
    def _select_fallback_pipeline(context: DecisionContext, intent: str) -> str | None:
        pipelines = context.org.pipelines
        needle = intent.lower()
        for pipeline in pipelines:
            if needle in pipeline.category.lower() or needle in pipeline.name.lower():
                return pipeline.id
        if context.org.settings.default_pipeline_id:
            return context.org.settings.default_pipeline_id
        active = next((p for p in pipelines if p.is_active), None)
        return active.id if active else None

    # ------------------------------------------------------------------
    # Intent classification
    # ------------------------------------------------------------------

    async def classify_intent(self, agent_input: AgentInput) -> IntentClassification:
        """LLM classification; keyword rules when the completion is unusable."""
        try:
            raw = await self.llm_client.complete_json(
                build_intent_prompt(agent_input.raw_content),
                system_prompt=INTENT_SYSTEM_PROMPT,
            )
        except LLMValidationError as exc:
            logger.warning("decision_engine.intent_fallback", error=str(exc))
            return self.classify_intent_basic(agent_input)

        confidence = raw.get("confidence")
        if not isinstance(confidence, (int, float)) or not isinstance(raw.get("intent"), str):
            return self.classify_intent_basic(agent_input)
        entities = raw.get("entities")
        return IntentClassification(
            intent=raw["intent"],
            confidence=max(0.0, min(1.0, float(confidence))),
            entities=entities if isinstance(entities, dict) else {},
            urgency=clamp_priority(raw.get("urgency", DEFAULT_URGENCY)),
            keywords=tuple(str(k) for k in raw.get("keywords") or []),
        )

    def classify_intent_basic(self, agent_input: AgentInput) -> IntentClassification:
        content = agent_input.raw_content
        return IntentClassification(
            intent=detect_intent(content),
            confidence=self.settings.fallback_confidence,
            urgency=detect_urgency(content),
            keywords=tuple(extract_keywords(content)),
        )

    # ------------------------------------------------------------------
    # Task-scoped decisions
    # ------------------------------------------------------------------

    async def decide_for_task(
        self, task: TaskInstance, event_type: str, payload: dict[str, Any]
    ) -> AgentDecisionResult:
        """Decide follow-up task actions for an event on ``task``.

        Only task action types are accepted. An unusable completion yields
        a NO_OP decision that requires approval.

        Raises:
            LLMError: When the completion itself fails.
        """
        response = await self.llm_client.complete(
            build_task_prompt(task, event_type, payload),
            system_prompt=TASK_AGENT_SYSTEM_PROMPT,
        )
        try:
            parsed = self._parse_response(response.content)
        except DecisionParseError as exc:
            return self._task_fallback(f"Parse error: {exc}")

        validation = self.validate_decision(parsed, TASK_ACTION_TYPES)
        decision = validation.decision
        if decision is None or not validation.is_valid:
            return self._task_fallback(f"Validation failed: {', '.join(validation.errors)}")
        if not decision.actions:
            decision = replace(
                decision,
                actions=(
                    AgentAction(type=ActionType.NO_OP, params={"reason": decision.reasoning}),
                ),
            )
        logger.info(
            "decision_engine.task_decision_made",
            task_id=task.task_id,
            event_type=event_type,
            decision_id=decision.decision_id,
            actions=[a.type for a in decision.actions],
        )
        return decision

    def _task_fallback(self, reason: str) -> AgentDecisionResult:
        logger.warning("decision_engine.task_fallback_used", reason=reason)
        return AgentDecisionResult(
            intent=Intent.GENERAL.value,
            confidence=self.settings.fallback_confidence,
            reasoning=f"[FALLBACK] {reason}",
            actions=(AgentAction(type=ActionType.NO_OP, params={"reason": reason}),),
            requires_approval=True,
            warnings=(f"Decision made via fallback logic: {reason}",),
        )

    @staticmethod
    def _parse_response(raw_response: str | dict[str, Any]) -> dict[str, Any]:
        if isinstance(raw_response, dict):
            return raw_response
        try:
            parsed = extract_json(raw_response)
        except ValueError as exc:
            raise DecisionParseError(str(exc)) from exc
        if not isinstance(parsed, dict):
            raise DecisionParseError(
                f"Expected a JSON object, got {type(parsed).__name__}: "
                f"{json.dumps(parsed)[:80]}"
            )
        return parsed
