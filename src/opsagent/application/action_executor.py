"""
Action Executor

Executes the ordered action list of a decision through a fixed dispatch
table of handlers. Handles priority ordering, per-action delay and
conditions, a wall-clock budget for the whole run, a per-action timeout
with linear-backoff retries, and reverse-order compensating rollback.

Every failure mode is converted into ``ActionResult`` / ``ExecutionError``
values; ``execute`` only raises for programming errors. Executors are
created through ``ActionExecutorBuilder`` and are immutable afterwards.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any
from uuid import uuid4

import structlog

from opsagent.application.stub_handlers import StubActionHandlers
from opsagent.core.domain.actions import (
    ActionCondition,
    ActionExecutionContext,
    ActionResult,
    ActionType,
    AgentAction,
    ConditionType,
    DecisionOutcome,
    DecisionStatus,
    ExecutionError,
    ExecutionErrorCode,
    HandlerOutcome,
    RollbackEntry,
    action_key,
)
from opsagent.core.domain.config_schema import ExecutorSettings
from opsagent.core.domain.errors import ExecutorConfigurationError
from opsagent.core.domain.events import ACTION_EXECUTED, EmitOptions
from opsagent.core.interfaces.action_handler import ActionHandler
from opsagent.core.interfaces.event_bus import EventBusProtocol
from opsagent.core.utils.time import monotonic_ms, parse_timestamp, utc_now

logger = structlog.get_logger(__name__)

SKIPPED_MESSAGE = "Action skipped: condition not met"

ConditionEvaluator = Callable[
    [ActionCondition, ActionExecutionContext], Awaitable[bool] | bool
]


@dataclass(frozen=True)
class ExecutorConfig:
    """Executor limits; all durations in milliseconds."""

    dry_run: bool = False
    max_execution_time_ms: int = 300_000
    action_timeout_ms: int = 30_000
    retry_attempts: int = 2
    retry_delay_ms: int = 1_000
    stop_on_failure: bool = False
    enable_rollback: bool = True
    org_id: str | None = None

    @classmethod
    def from_settings(
        cls, settings: ExecutorSettings, org_id: str | None = None
    ) -> ExecutorConfig:
        return cls(
            dry_run=settings.dry_run,
            max_execution_time_ms=settings.max_execution_time_ms,
            action_timeout_ms=settings.action_timeout_ms,
            retry_attempts=settings.retry_attempts,
            retry_delay_ms=settings.retry_delay_ms,
            stop_on_failure=settings.stop_on_failure,
            enable_rollback=settings.enable_rollback,
            org_id=org_id,
        )


@dataclass(frozen=True)
class ExecutionOptions:
    """Per-call overrides of ``ExecutorConfig``; None keeps the configured value."""

    execution_id: str | None = None
    correlation_id: str | None = None
    org_id: str | None = None
    dry_run: bool | None = None
    stop_on_failure: bool | None = None
    decision_id: str | None = None


@dataclass(frozen=True)
class ExecutionPlan:
    """Static view of how a list of actions would be run."""

    sequential: tuple[AgentAction, ...] = ()
    parallel: tuple[tuple[AgentAction, ...], ...] = ()
    conditional: tuple[AgentAction, ...] = ()
    estimated_delay_ms: int = 0


@dataclass
class _RunState:
    """Mutable bookkeeping owned by exactly one ``execute`` call."""

    context: ActionExecutionContext
    started_ms: int
    results: list[ActionResult] = field(default_factory=list)
    errors: list[ExecutionError] = field(default_factory=list)
    rollback_stack: list[RollbackEntry] = field(default_factory=list)


def sort_by_priority(actions: Sequence[AgentAction]) -> list[AgentAction]:
    """Highest priority first; ``sorted`` is stable so ties keep input order."""
    return sorted(actions, key=lambda a: a.priority, reverse=True)


class ActionExecutor:
    """Runs action lists against an immutable handler table."""

    def __init__(
        self,
        handlers: Mapping[str, ActionHandler],
        event_bus: EventBusProtocol,
        config: ExecutorConfig | None = None,
        condition_evaluators: Mapping[ConditionType, ConditionEvaluator] | None = None,
        custom_conditions: Mapping[str, ConditionEvaluator] | None = None,
    ) -> None:
        self._handlers: Mapping[str, ActionHandler] = MappingProxyType(dict(handlers))
        self._event_bus = event_bus
        self._config = config or ExecutorConfig()
        self._condition_evaluators = MappingProxyType(dict(condition_evaluators or {}))
        self._custom_conditions = MappingProxyType(dict(custom_conditions or {}))

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def registered_action_types(self) -> list[str]:
        return list(self._handlers)

    def has_handler(self, action_type: str | ActionType) -> bool:
        return action_key(action_type) in self._handlers

    def validate_actions(self, actions: Sequence[AgentAction]) -> list[str]:
        """Return the action types in ``actions`` that have no handler."""
        missing: list[str] = []
        for action in actions:
            if action.type not in self._handlers and action.type not in missing:
                missing.append(action.type)
        return missing

    def create_execution_plan(self, actions: Sequence[AgentAction]) -> ExecutionPlan:
        """Group actions the way an operator would read them.

        Conditional actions are listed separately; the rest are grouped by
        priority, singletons as sequential steps and larger groups as
        batches that carry no ordering constraint among themselves.
        """
        conditional = tuple(a for a in actions if a.condition is not None)
        groups: dict[int, list[AgentAction]] = {}
        for action in actions:
            if action.condition is None:
                groups.setdefault(action.priority, []).append(action)

        sequential: list[AgentAction] = []
        parallel: list[tuple[AgentAction, ...]] = []
        for priority in sorted(groups, reverse=True):
            group = groups[priority]
            if len(group) == 1:
                sequential.append(group[0])
            else:
                parallel.append(tuple(group))

        return ExecutionPlan(
            sequential=tuple(sequential),
            parallel=tuple(parallel),
            conditional=conditional,
            estimated_delay_ms=sum(a.delay_ms or 0 for a in actions),
        )

    def stats(self) -> dict[str, Any]:
        return {
            "registered_handlers": len(self._handlers),
            "handler_types": self.registered_action_types,
            "config": asdict(self._config),
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        actions: Sequence[AgentAction],
        options: ExecutionOptions | None = None,
    ) -> DecisionOutcome:
        """Execute ``actions`` and summarize the run.

        Args:
            actions: Actions to run; sorted here by descending priority.
            options: Per-call overrides (dry run, correlation id, ...).

        Returns:
            The run's ``DecisionOutcome``. Business failures are reported in
            it, never raised.

        Raises:
            ExecutorConfigurationError: If ``options`` or an action is not of
                the expected type.
        """
        opts = options or ExecutionOptions()
        if not isinstance(opts, ExecutionOptions):
            raise ExecutorConfigurationError(
                f"options must be ExecutionOptions, got {type(opts).__name__}"
            )
        for action in actions:
            if not isinstance(action, AgentAction):
                raise ExecutorConfigurationError(
                    f"actions must be AgentAction instances, got {type(action).__name__}"
                )

        dry_run = self._config.dry_run if opts.dry_run is None else opts.dry_run
        stop_on_failure = (
            self._config.stop_on_failure if opts.stop_on_failure is None else opts.stop_on_failure
        )
        execution_id = opts.execution_id or f"exec_{uuid4().hex[:12]}"
        state = _RunState(
            context=ActionExecutionContext(
                execution_id=execution_id,
                dry_run=dry_run,
                org_id=opts.org_id or self._config.org_id,
                correlation_id=opts.correlation_id,
                event_bus=self._event_bus,
            ),
            started_ms=monotonic_ms(),
        )
        log = logger.bind(execution_id=execution_id, dry_run=dry_run)
        ordered = sort_by_priority(actions)
        log.info("action_executor.started", action_count=len(ordered))

        for action in ordered:
            elapsed = monotonic_ms() - state.started_ms
            if elapsed > self._config.max_execution_time_ms:
                log.error(
                    "action_executor.execution_timeout",
                    elapsed_ms=elapsed,
                    budget_ms=self._config.max_execution_time_ms,
                )
                state.errors.append(
                    ExecutionError(
                        action=action.type,
                        code=ExecutionErrorCode.EXECUTION_TIMEOUT,
                        message=(
                            "Execution timeout exceeded "
                            f"({self._config.max_execution_time_ms}ms)"
                        ),
                        retryable=False,
                    )
                )
                break

            if action.delay_ms and action.delay_ms > 0:
                log.debug("action_executor.delaying", action=action.type, delay_ms=action.delay_ms)
                await asyncio.sleep(action.delay_ms / 1000)

            condition_met = True
            condition_error: str | None = None
            if action.condition is not None:
                try:
                    condition_met = await self._evaluate_condition(
                        action.condition, state.context
                    )
                except Exception as exc:
                    condition_error = str(exc) or type(exc).__name__
                    log.error(
                        "action_executor.condition_failed",
                        action=action.type,
                        condition=action.condition.type.value,
                        error=condition_error,
                    )

            if condition_error is None and not condition_met:
                log.info("action_executor.action_skipped", action=action.type)
                state.results.append(
                    ActionResult(
                        action=action.type,
                        success=True,
                        data={"skipped": True, "reason": "Condition not met"},
                        execution_time=0,
                        message=SKIPPED_MESSAGE,
                    )
                )
                state.context.previous_results = list(state.results)
                continue

            if condition_error is not None:
                result = ActionResult(
                    action=action.type,
                    success=False,
                    execution_time=0,
                    message=f"Condition evaluation failed: {condition_error}",
                )
            else:
                result = await self._execute_action(action, state)
            state.results.append(result)
            state.context.previous_results = list(state.results)

            if not result.success:
                state.errors.append(
                    ExecutionError(
                        action=action.type,
                        code=ExecutionErrorCode.ACTION_FAILED,
                        message=result.message or "Action execution failed",
                        retryable=True,
                    )
                )
                if stop_on_failure:
                    log.warning("action_executor.stopped_on_failure", action=action.type)
                    break

        rolled_back = False
        if state.errors and self._config.enable_rollback and not dry_run:
            rolled_back = await self._rollback(state.rollback_stack, log)

        if state.errors:
            status = DecisionStatus.FAILED
        elif dry_run:
            status = DecisionStatus.PENDING
        else:
            status = DecisionStatus.EXECUTED

        outcome = DecisionOutcome(
            status=status,
            execution_time=monotonic_ms() - state.started_ms,
            results=tuple(state.results),
            errors=tuple(state.errors),
            rolled_back=rolled_back,
            completed_at=utc_now(),
        )
        log.info(
            "action_executor.completed",
            status=status.value,
            execution_time_ms=outcome.execution_time,
            success_count=sum(1 for r in state.results if r.success),
            error_count=len(state.errors),
            rolled_back=rolled_back,
        )
        await self._emit_summary(execution_id, ordered, outcome, opts, state.context)
        return outcome

    async def _execute_action(self, action: AgentAction, state: _RunState) -> ActionResult:
        """Run one action with timeout and retries; always returns one result."""
        started = monotonic_ms()
        handler = self._handlers.get(action.type)
        if handler is None:
            logger.warning("action_executor.no_handler", action=action.type)
            return ActionResult(
                action=action.type,
                success=False,
                execution_time=monotonic_ms() - started,
                message=f"No handler registered for action type: {action.type}",
            )

        last_error = "Unknown error"
        timeout_s = self._config.action_timeout_ms / 1000
        for attempt in range(self._config.retry_attempts + 1):
            if attempt > 0:
                backoff_ms = self._config.retry_delay_ms * attempt
                logger.debug(
                    "action_executor.retrying",
                    action=action.type,
                    attempt=attempt + 1,
                    backoff_ms=backoff_ms,
                )
                await asyncio.sleep(backoff_ms / 1000)
            try:
                outcome = await asyncio.wait_for(handler(action, state.context), timeout=timeout_s)
            except asyncio.TimeoutError:
                last_error = f"Action timeout exceeded ({self._config.action_timeout_ms}ms)"
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
            else:
                self._track_rollback(action, outcome, state)
                return ActionResult(
                    action=action.type,
                    success=outcome.success,
                    data=outcome.data,
                    execution_time=monotonic_ms() - started,
                    message=outcome.error,
                )
            logger.warning(
                "action_executor.attempt_failed",
                action=action.type,
                attempt=attempt + 1,
                error=last_error,
            )

        return ActionResult(
            action=action.type,
            success=False,
            execution_time=monotonic_ms() - started,
            message=last_error,
        )

    @staticmethod
    def _track_rollback(action: AgentAction, outcome: HandlerOutcome, state: _RunState) -> None:
        if (
            outcome.success
            and outcome.rollbackable
            and outcome.rollback is not None
            and not state.context.dry_run
        ):
            state.rollback_stack.append(RollbackEntry(action=action, rollback=outcome.rollback))

    async def _rollback(self, stack: list[RollbackEntry], log: Any) -> bool:
        """Unwind the stack newest first. Returns True if any entry was unwound."""
        if not stack:
            return False
        log.info("action_executor.rollback_started", entries=len(stack))
        attempted = 0
        while stack:
            entry = stack.pop()
            attempted += 1
            try:
                await entry.rollback()
                log.info("action_executor.rollback_succeeded", action=entry.action.type)
            except Exception as exc:
                log.error(
                    "action_executor.rollback_failed",
                    action=entry.action.type,
                    error=str(exc),
                )
        return attempted > 0

    async def _evaluate_condition(
        self, condition: ActionCondition, context: ActionExecutionContext
    ) -> bool:
        evaluator = self._condition_evaluators.get(condition.type)
        if condition.type == ConditionType.CUSTOM:
            name = condition.params.get("evaluator")
            evaluator = self._custom_conditions.get(str(name)) if name else evaluator

        if evaluator is not None:
            verdict = evaluator(condition, context)
            if inspect.isawaitable(verdict):
                verdict = await verdict
            return bool(verdict)

        if condition.type == ConditionType.TIME_RANGE:
            return _within_time_range(condition)
        return True

    async def _emit_summary(
        self,
        execution_id: str,
        actions: Sequence[AgentAction],
        outcome: DecisionOutcome,
        opts: ExecutionOptions,
        context: ActionExecutionContext,
    ) -> None:
        payload = {
            "execution_id": execution_id,
            "decision_id": opts.decision_id or execution_id,
            "status": outcome.status.value,
            "dry_run": context.dry_run,
            "actions": [a.to_dict() for a in actions],
            "results": [r.to_dict() for r in outcome.results],
            "errors": [e.to_dict() for e in outcome.errors],
            "rolled_back": outcome.rolled_back,
            "execution_time": outcome.execution_time,
        }
        await self._event_bus.emit(
            ACTION_EXECUTED,
            payload,
            EmitOptions(
                source="agent",
                correlation_id=opts.correlation_id,
                org_id=context.org_id,
            ),
        )


def _within_time_range(condition: ActionCondition) -> bool:
    """Unparseable bounds never match."""
    try:
        start = parse_timestamp(condition.params.get("start"))
        end = parse_timestamp(condition.params.get("end"))
    except (TypeError, ValueError):
        logger.warning("action_executor.invalid_time_range", params=condition.params)
        return False
    now = utc_now()
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


class ActionExecutorBuilder:
    """Collects handlers and evaluators, then freezes them into an executor.

    Example:
        executor = (
            ActionExecutorBuilder(event_bus, config)
            .register_handler(ActionType.CREATE_EVENT, create_calendar_event)
            .with_stub_handlers()
            .build()
        )
    """

    def __init__(self, event_bus: EventBusProtocol, config: ExecutorConfig | None = None) -> None:
        self._event_bus = event_bus
        self._config = config or ExecutorConfig()
        self._handlers: dict[str, ActionHandler] = {}
        self._condition_evaluators: dict[ConditionType, ConditionEvaluator] = {}
        self._custom_conditions: dict[str, ConditionEvaluator] = {}
        self._built = False

    def register_handler(
        self, action_type: str | ActionType, handler: ActionHandler
    ) -> ActionExecutorBuilder:
        self._ensure_open()
        key = action_key(action_type)
        if not key:
            raise ExecutorConfigurationError("action_type must not be empty")
        if key in self._handlers:
            logger.info("action_executor.handler_replaced", action=key)
        self._handlers[key] = handler
        return self

    def with_stub_handlers(self) -> ActionExecutorBuilder:
        """Fill unregistered generic action types with the null-object handlers."""
        self._ensure_open()
        for key, handler in StubActionHandlers().as_mapping().items():
            self._handlers.setdefault(key, handler)
        return self

    def with_condition_evaluator(
        self, condition_type: ConditionType, evaluator: ConditionEvaluator
    ) -> ActionExecutorBuilder:
        self._ensure_open()
        self._condition_evaluators[condition_type] = evaluator
        return self

    def with_custom_condition(
        self, name: str, evaluator: ConditionEvaluator
    ) -> ActionExecutorBuilder:
        """Register an evaluator referenced by ``condition.params["evaluator"]``."""
        self._ensure_open()
        self._custom_conditions[name] = evaluator
        return self

    def build(self) -> ActionExecutor:
        self._ensure_open()
        self._built = True
        logger.info("action_executor.built", handler_types=sorted(self._handlers))
        return ActionExecutor(
            handlers=self._handlers,
            event_bus=self._event_bus,
            config=self._config,
            condition_evaluators=self._condition_evaluators,
            custom_conditions=self._custom_conditions,
        )

    def _ensure_open(self) -> None:
        if self._built:
            raise ExecutorConfigurationError("builder already produced an executor")
