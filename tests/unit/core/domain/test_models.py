"""Tests for the domain data contracts."""

from datetime import UTC, datetime

import pytest

from opsagent.core.domain.actions import (
    ActionCondition,
    ActionResult,
    ActionType,
    AgentAction,
    ConditionType,
)
from opsagent.core.domain.agent_input import AgentInput, AgentInputSource
from opsagent.core.domain.decision import AgentDecisionResult, OrgSettings
from opsagent.core.domain.task import (
    AGENT_HISTORY_LIMIT,
    AgentState,
    TaskInstance,
    TaskOverride,
    TaskStatus,
)
from opsagent.core.utils.time import parse_timestamp


class TestAgentAction:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(0, 1), (3, 3), (9, 5), ("2", 2), ("urgent", 3), (None, 3)],
    )
    def test_priority_is_clamped(self, raw, expected) -> None:
        assert AgentAction(type="NO_ACTION", priority=raw).priority == expected

    def test_enum_type_is_normalized(self) -> None:
        action = AgentAction(type=ActionType.ESCALATE)
        assert action.type == "ESCALATE"
        assert action.known_type is ActionType.ESCALATE
        assert AgentAction(type="LAUNCH_ROCKET").known_type is None

    def test_nested_from_dict(self) -> None:
        action = AgentAction.from_dict(
            {
                "type": "CREATE_EVENT",
                "params": {"title": "Kickoff"},
                "delay_ms": "500",
                "condition": {"type": "slot_available", "params": {"slot": "a"}},
                "fallback": {"type": "ESCALATE", "params": {"reason": "no slot"}},
            }
        )

        assert action.delay_ms == 500
        assert action.condition == ActionCondition(ConditionType.SLOT_AVAILABLE, {"slot": "a"})
        assert action.fallback.type == "ESCALATE"
        assert action.to_dict()["fallback"]["params"] == {"reason": "no slot"}

    def test_skipped_result(self) -> None:
        assert ActionResult(action="X", success=True, data={"skipped": True}).skipped is True
        assert ActionResult(action="X", success=True).skipped is False


class TestAgentInput:
    def test_from_dict_accepts_lowercase_source(self) -> None:
        agent_input = AgentInput.from_dict(
            {
                "source": "email",
                "type": "booking_request",
                "raw_content": "Can we meet Tuesday 2pm?",
                "timestamp": "2026-01-05T09:00:00Z",
            }
        )

        assert agent_input.source is AgentInputSource.EMAIL
        assert agent_input.timestamp == datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
        assert agent_input.input_id

    def test_unknown_source_rejected(self) -> None:
        with pytest.raises(ValueError):
            AgentInput.from_dict({"source": "carrier_pigeon"})


class TestDecisionModels:
    def test_decision_from_dict(self) -> None:
        decision = AgentDecisionResult.from_dict(
            {
                "intent": "BOOKING_REQUEST",
                "confidence": "0.9",
                "reasoning": "Meeting request",
                "actions": [{"type": "CREATE_EVENT", "params": {}}],
            }
        )

        assert decision.confidence == 0.9
        assert decision.actions[0].type == "CREATE_EVENT"
        assert decision.to_dict()["decision_id"] == decision.decision_id

    def test_org_settings_defaults(self) -> None:
        settings = OrgSettings.from_dict({"enabled_actions": ["ESCALATE"], "business_hours": 5})
        assert settings.enabled_actions == ("ESCALATE",)
        assert settings.business_hours == {"start": "09:00", "end": "17:00"}


class TestTaskModels:
    def test_status_groups(self) -> None:
        assert TaskStatus.DONE.is_terminal is True
        assert TaskStatus.NEW.is_open is True
        assert TaskStatus.BLOCKED.is_open is False

    def test_agent_history_is_bounded(self) -> None:
        state = AgentState()
        for index in range(AGENT_HISTORY_LIMIT + 5):
            state.record(f"d-{index}", {})

        assert len(state.history) == AGENT_HISTORY_LIMIT
        assert state.history[0]["decision_id"] == "d-5"
        assert state.last_decision_id == f"d-{AGENT_HISTORY_LIMIT + 4}"

    def test_record_round_trip(self) -> None:
        task = TaskInstance(
            task_id="t-1",
            org_id="org-1",
            status=TaskStatus.IN_PROGRESS,
            tags=["vip"],
            override=TaskOverride(overridden=True, by="u-1", at=datetime(2026, 1, 1, tzinfo=UTC)),
        )

        restored = TaskInstance.from_record(task.to_record())

        assert restored == task
        assert restored.is_overridden is True


class TestParseTimestamp:
    def test_naive_values_are_utc(self) -> None:
        assert parse_timestamp("2026-01-05T09:00:00").tzinfo is UTC

    def test_empty(self) -> None:
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None
