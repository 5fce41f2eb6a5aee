"""Tests for ActionExecutor and ActionExecutorBuilder."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from opsagent.application.action_executor import (
    ActionExecutorBuilder,
    ExecutionOptions,
    ExecutorConfig,
    sort_by_priority,
)
from opsagent.core.domain.actions import (
    ActionCondition,
    ActionExecutionContext,
    ActionType,
    AgentAction,
    ConditionType,
    DecisionStatus,
    ExecutionErrorCode,
    HandlerOutcome,
)
from opsagent.core.domain.errors import ExecutorConfigurationError
from opsagent.core.domain.events import ACTION_EXECUTED
from opsagent.core.utils.time import utc_now
from opsagent.infrastructure.messaging.event_bus import InMemoryEventBus

FAST = ExecutorConfig(retry_attempts=0, retry_delay_ms=0)


def _ok(data: dict | None = None):
    async def handler(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
        return HandlerOutcome(success=True, data=data or {"type": action.type})

    return handler


class TestPriorityOrdering:
    def test_sorts_descending_and_keeps_ties_stable(self) -> None:
        actions = [
            AgentAction(type="NO_ACTION", priority=2, params={"n": 1}),
            AgentAction(type="ESCALATE", priority=5),
            AgentAction(type="NO_ACTION", priority=2, params={"n": 2}),
        ]
        ordered = sort_by_priority(actions)
        assert [a.priority for a in ordered] == [5, 2, 2]
        assert [a.params.get("n") for a in ordered[1:]] == [1, 2]

    def test_priority_is_clamped(self) -> None:
        assert AgentAction(type="NO_ACTION", priority=9).priority == 5
        assert AgentAction(type="NO_ACTION", priority="high").priority == 3


class TestExecute:
    async def test_runs_actions_in_priority_order(self, event_bus: InMemoryEventBus) -> None:
        calls: list[str] = []

        async def record(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            calls.append(action.params["name"])
            return HandlerOutcome(success=True)

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .register_handler(ActionType.NO_ACTION, record)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(type="NO_ACTION", priority=1, params={"name": "low"}),
                AgentAction(type="NO_ACTION", priority=5, params={"name": "high"}),
            ]
        )

        assert outcome.status == DecisionStatus.EXECUTED
        assert calls == ["high", "low"]
        assert len(outcome.results) == 2

    async def test_missing_handler_is_reported_not_raised(
        self, event_bus: InMemoryEventBus
    ) -> None:
        executor = ActionExecutorBuilder(event_bus, FAST).build()
        outcome = await executor.execute([AgentAction(type="CREATE_EVENT")])

        assert outcome.status == DecisionStatus.FAILED
        assert outcome.results[0].success is False
        assert "No handler registered" in (outcome.results[0].message or "")
        assert outcome.errors[0].code == ExecutionErrorCode.ACTION_FAILED

    async def test_handler_exception_becomes_failed_result(
        self, event_bus: InMemoryEventBus
    ) -> None:
        async def boom(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            raise RuntimeError("calendar offline")

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .register_handler("CREATE_EVENT", boom)
            .build()
        )
        outcome = await executor.execute([AgentAction(type="CREATE_EVENT")])

        assert outcome.status == DecisionStatus.FAILED
        assert outcome.results[0].message == "calendar offline"
        assert outcome.errors[0].message == "calendar offline"

    async def test_retries_until_success(self, event_bus: InMemoryEventBus) -> None:
        attempts = {"count": 0}

        async def flaky(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            attempts["count"] += 1
            if attempts["count"] < 3:
                raise ConnectionError("try again")
            return HandlerOutcome(success=True)

        config = ExecutorConfig(retry_attempts=2, retry_delay_ms=0)
        executor = (
            ActionExecutorBuilder(event_bus, config)
            .register_handler("CREATE_EVENT", flaky)
            .build()
        )
        outcome = await executor.execute([AgentAction(type="CREATE_EVENT")])

        assert outcome.status == DecisionStatus.EXECUTED
        assert attempts["count"] == 3
        assert len(outcome.results) == 1

    async def test_action_timeout(self, event_bus: InMemoryEventBus) -> None:
        async def slow(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            await asyncio.sleep(1)
            return HandlerOutcome(success=True)

        config = ExecutorConfig(action_timeout_ms=10, retry_attempts=0)
        executor = (
            ActionExecutorBuilder(event_bus, config)
            .register_handler("CREATE_EVENT", slow)
            .build()
        )
        outcome = await executor.execute([AgentAction(type="CREATE_EVENT")])

        assert outcome.status == DecisionStatus.FAILED
        assert "timeout" in (outcome.results[0].message or "").lower()

    async def test_stop_on_failure_skips_remaining(self, event_bus: InMemoryEventBus) -> None:
        async def fail(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            return HandlerOutcome(success=False, error="nope")

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .register_handler("CREATE_EVENT", fail)
            .register_handler("NO_ACTION", _ok())
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(type="CREATE_EVENT", priority=5),
                AgentAction(type="NO_ACTION", priority=1),
            ],
            ExecutionOptions(stop_on_failure=True),
        )

        assert outcome.status == DecisionStatus.FAILED
        assert len(outcome.results) == 1

    async def test_dry_run_reports_pending(self, event_bus: InMemoryEventBus) -> None:
        executor = ActionExecutorBuilder(event_bus, FAST).with_stub_handlers().build()
        outcome = await executor.execute(
            [AgentAction(type="CREATE_EVENT", params={"title": "Demo"})],
            ExecutionOptions(dry_run=True),
        )

        assert outcome.status == DecisionStatus.PENDING
        assert outcome.results[0].data == {"dry_run": True, "title": "Demo"}

    async def test_rejects_wrong_argument_types(self, event_bus: InMemoryEventBus) -> None:
        executor = ActionExecutorBuilder(event_bus, FAST).build()
        with pytest.raises(ExecutorConfigurationError):
            await executor.execute([{"type": "NO_ACTION"}])  # type: ignore[list-item]
        with pytest.raises(ExecutorConfigurationError):
            await executor.execute([], {"dry_run": True})  # type: ignore[arg-type]

    async def test_emits_summary_event(self, event_bus: InMemoryEventBus, captured_events) -> None:
        executor = ActionExecutorBuilder(event_bus, FAST).with_stub_handlers().build()
        await executor.execute(
            [AgentAction(type="NO_ACTION")],
            ExecutionOptions(execution_id="exec-1", decision_id="dec-1", org_id="org-1"),
        )

        summaries = [e for e in captured_events if e.type == ACTION_EXECUTED]
        assert len(summaries) == 1
        assert summaries[0].payload["decision_id"] == "dec-1"
        assert summaries[0].payload["status"] == DecisionStatus.EXECUTED.value
        assert summaries[0].source == "agent"
        assert summaries[0].org_id == "org-1"


class TestRollback:
    async def test_rolls_back_succeeded_actions_in_reverse_order(
        self, event_bus: InMemoryEventBus
    ) -> None:
        undone: list[str] = []

        def reversible(name: str):
            async def handler(
                action: AgentAction, context: ActionExecutionContext
            ) -> HandlerOutcome:
                async def rollback() -> None:
                    undone.append(name)

                return HandlerOutcome(success=True, rollbackable=True, rollback=rollback)

            return handler

        async def fail(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            return HandlerOutcome(success=False, error="downstream failure")

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .register_handler("ASSIGN_PIPELINE", reversible("pipeline"))
            .register_handler("CREATE_EVENT", reversible("event"))
            .register_handler("SEND_NOTIFICATION", fail)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(type="ASSIGN_PIPELINE", priority=5),
                AgentAction(type="CREATE_EVENT", priority=4),
                AgentAction(type="SEND_NOTIFICATION", priority=1),
            ]
        )

        assert outcome.status == DecisionStatus.FAILED
        assert outcome.rolled_back is True
        assert undone == ["event", "pipeline"]

    async def test_rollback_errors_do_not_stop_unwinding(
        self, event_bus: InMemoryEventBus
    ) -> None:
        undone: list[str] = []

        async def first(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            async def rollback() -> None:
                undone.append("first")

            return HandlerOutcome(success=True, rollbackable=True, rollback=rollback)

        async def second(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            async def rollback() -> None:
                raise RuntimeError("cannot undo")

            return HandlerOutcome(success=True, rollbackable=True, rollback=rollback)

        async def fail(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            return HandlerOutcome(success=False, error="x")

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .register_handler("ASSIGN_PIPELINE", first)
            .register_handler("CREATE_EVENT", second)
            .register_handler("ESCALATE", fail)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(type="ASSIGN_PIPELINE", priority=5),
                AgentAction(type="CREATE_EVENT", priority=4),
                AgentAction(type="ESCALATE", priority=1),
            ]
        )

        assert outcome.rolled_back is True
        assert undone == ["first"]

    async def test_no_rollback_in_dry_run(self, event_bus: InMemoryEventBus) -> None:
        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .with_stub_handlers()
            .build()
        )
        outcome = await executor.execute(
            [AgentAction(type="ASSIGN_PIPELINE", priority=5), AgentAction(type="UNKNOWN")],
            ExecutionOptions(dry_run=True),
        )

        assert outcome.status == DecisionStatus.FAILED
        assert outcome.rolled_back is False


class TestConditions:
    async def test_unmet_condition_skips_action(self, event_bus: InMemoryEventBus) -> None:
        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .with_stub_handlers()
            .with_condition_evaluator(ConditionType.USER_AVAILABLE, lambda c, ctx: False)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(
                    type="NO_ACTION",
                    condition=ActionCondition(type=ConditionType.USER_AVAILABLE),
                )
            ]
        )

        assert outcome.status == DecisionStatus.EXECUTED
        assert outcome.results[0].skipped is True

    async def test_custom_named_evaluator(self, event_bus: InMemoryEventBus) -> None:
        async def always(condition, context) -> bool:
            return True

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .with_stub_handlers()
            .with_custom_condition("vip_only", always)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(
                    type="NO_ACTION",
                    condition=ActionCondition(
                        type=ConditionType.CUSTOM, params={"evaluator": "vip_only"}
                    ),
                )
            ]
        )

        assert outcome.results[0].skipped is False


class TestBuilder:
    def test_builder_is_single_use(self, event_bus: InMemoryEventBus) -> None:
        builder = ActionExecutorBuilder(event_bus)
        builder.build()
        with pytest.raises(ExecutorConfigurationError):
            builder.register_handler("NO_ACTION", _ok())

    def test_stub_handlers_do_not_replace_registered(self, event_bus: InMemoryEventBus) -> None:
        custom = _ok({"custom": True})
        executor = (
            ActionExecutorBuilder(event_bus)
            .register_handler(ActionType.ESCALATE, custom)
            .with_stub_handlers()
            .build()
        )
        assert executor.has_handler("ESCALATE")
        assert set(executor.registered_action_types) >= {"ASSIGN_PIPELINE", "NO_ACTION"}

    def test_validate_actions_lists_missing_types(self, event_bus: InMemoryEventBus) -> None:
        executor = ActionExecutorBuilder(event_bus).with_stub_handlers().build()
        missing = executor.validate_actions(
            [AgentAction(type="SET_STATUS"), AgentAction(type="NO_ACTION")]
        )
        assert missing == ["SET_STATUS"]

    def test_execution_plan_groups_by_priority(self, event_bus: InMemoryEventBus) -> None:
        executor = ActionExecutorBuilder(event_bus).with_stub_handlers().build()
        plan = executor.create_execution_plan(
            [
                AgentAction(type="ESCALATE", priority=5),
                AgentAction(type="NO_ACTION", priority=3, delay_ms=100),
                AgentAction(type="SEND_NOTIFICATION", priority=3),
                AgentAction(
                    type="CREATE_EVENT",
                    condition=ActionCondition(type=ConditionType.SLOT_AVAILABLE),
                ),
            ]
        )
        assert [a.type for a in plan.sequential] == ["ESCALATE"]
        assert len(plan.parallel) == 1 and len(plan.parallel[0]) == 2
        assert [a.type for a in plan.conditional] == ["CREATE_EVENT"]
        assert plan.estimated_delay_ms == 100


class TestExecutionBudget:
    async def test_budget_exceeded_cuts_off_remaining_actions(
        self, event_bus: InMemoryEventBus
    ) -> None:
        async def slow(action: AgentAction, context: ActionExecutionContext) -> HandlerOutcome:
            await asyncio.sleep(0.05)
            return HandlerOutcome(success=True)

        config = ExecutorConfig(max_execution_time_ms=10, retry_attempts=0)
        executor = (
            ActionExecutorBuilder(event_bus, config)
            .register_handler("CREATE_EVENT", slow)
            .register_handler("NO_ACTION", _ok())
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(type="CREATE_EVENT", priority=5),
                AgentAction(type="NO_ACTION", priority=3),
                AgentAction(type="NO_ACTION", priority=1),
            ]
        )

        assert outcome.status == DecisionStatus.FAILED
        assert [r.action for r in outcome.results] == ["CREATE_EVENT"]
        assert len(outcome.errors) == 1
        error = outcome.errors[0]
        assert error.code == ExecutionErrorCode.EXECUTION_TIMEOUT
        assert error.retryable is False
        assert error.action == "NO_ACTION"


class TestDelays:
    @pytest.fixture
    def sleeps(self, monkeypatch) -> list[float]:
        recorded: list[float] = []
        real_sleep = asyncio.sleep

        async def fake_sleep(seconds: float) -> None:
            recorded.append(seconds)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        return recorded

    async def test_delay_runs_before_action(
        self, event_bus: InMemoryEventBus, sleeps: list[float]
    ) -> None:
        executor = ActionExecutorBuilder(event_bus, FAST).with_stub_handlers().build()
        outcome = await executor.execute([AgentAction(type="NO_ACTION", delay_ms=250)])

        assert outcome.status == DecisionStatus.EXECUTED
        assert sleeps == [0.25]

    async def test_delay_applies_even_when_condition_skips(
        self, event_bus: InMemoryEventBus, sleeps: list[float]
    ) -> None:
        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .with_stub_handlers()
            .with_condition_evaluator(ConditionType.SLOT_AVAILABLE, lambda c, ctx: False)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(
                    type="NO_ACTION",
                    delay_ms=100,
                    condition=ActionCondition(type=ConditionType.SLOT_AVAILABLE),
                )
            ]
        )

        assert sleeps == [0.1]
        assert outcome.results[0].skipped is True


class TestTimeRangeConditions:
    @staticmethod
    def _windowed(**bounds: str) -> AgentAction:
        return AgentAction(
            type="NO_ACTION",
            condition=ActionCondition(type=ConditionType.TIME_RANGE, params=bounds),
        )

    async def test_inside_window_runs(self, event_bus: InMemoryEventBus) -> None:
        now = utc_now()
        executor = ActionExecutorBuilder(event_bus, FAST).with_stub_handlers().build()
        outcome = await executor.execute(
            [
                self._windowed(
                    start=(now - timedelta(hours=1)).isoformat(),
                    end=(now + timedelta(hours=1)).isoformat(),
                )
            ]
        )

        assert outcome.status == DecisionStatus.EXECUTED
        assert outcome.results[0].skipped is False

    async def test_outside_window_is_skipped(self, event_bus: InMemoryEventBus) -> None:
        now = utc_now()
        executor = ActionExecutorBuilder(event_bus, FAST).with_stub_handlers().build()
        outcome = await executor.execute(
            [
                self._windowed(start=(now + timedelta(hours=1)).isoformat()),
                self._windowed(end=(now - timedelta(hours=1)).isoformat()),
            ]
        )

        assert outcome.status == DecisionStatus.EXECUTED
        assert [r.skipped for r in outcome.results] == [True, True]

    async def test_unparseable_bounds_skip_without_aborting_batch(
        self, event_bus: InMemoryEventBus
    ) -> None:
        executor = ActionExecutorBuilder(event_bus, FAST).with_stub_handlers().build()
        outcome = await executor.execute(
            [
                AgentAction(type="NO_ACTION", priority=5),
                self._windowed(start="Tuesday 2pm"),
            ]
        )

        assert outcome.status == DecisionStatus.EXECUTED
        assert outcome.errors == ()
        assert [r.skipped for r in outcome.results] == [False, True]


class TestConditionFailures:
    async def test_evaluator_error_fails_action_and_rolls_back(
        self, event_bus: InMemoryEventBus, captured_events
    ) -> None:
        undone: list[str] = []

        async def reversible(
            action: AgentAction, context: ActionExecutionContext
        ) -> HandlerOutcome:
            async def rollback() -> None:
                undone.append(action.type)

            return HandlerOutcome(success=True, rollbackable=True, rollback=rollback)

        async def availability(condition, context) -> bool:
            raise RuntimeError("availability service down")

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .register_handler("ASSIGN_PIPELINE", reversible)
            .with_stub_handlers()
            .with_condition_evaluator(ConditionType.USER_AVAILABLE, availability)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(type="ASSIGN_PIPELINE", priority=5),
                AgentAction(
                    type="CREATE_EVENT",
                    priority=3,
                    condition=ActionCondition(type=ConditionType.USER_AVAILABLE),
                ),
            ]
        )

        assert outcome.status == DecisionStatus.FAILED
        failed = outcome.results[1]
        assert failed.success is False
        assert failed.message == "Condition evaluation failed: availability service down"
        assert outcome.errors[0].code == ExecutionErrorCode.ACTION_FAILED
        assert outcome.rolled_back is True
        assert undone == ["ASSIGN_PIPELINE"]
        assert [e.type for e in captured_events].count(ACTION_EXECUTED) == 1

    async def test_evaluator_error_honours_stop_on_failure(
        self, event_bus: InMemoryEventBus
    ) -> None:
        def broken(condition, context) -> bool:
            raise ValueError("bad slot id")

        executor = (
            ActionExecutorBuilder(event_bus, FAST)
            .with_stub_handlers()
            .with_custom_condition("slot_check", broken)
            .build()
        )
        outcome = await executor.execute(
            [
                AgentAction(
                    type="NO_ACTION",
                    priority=5,
                    condition=ActionCondition(
                        type=ConditionType.CUSTOM, params={"evaluator": "slot_check"}
                    ),
                ),
                AgentAction(type="NO_ACTION", priority=1),
            ],
            ExecutionOptions(stop_on_failure=True),
        )

        assert len(outcome.results) == 1
        assert outcome.results[0].message == "Condition evaluation failed: bad slot id"
