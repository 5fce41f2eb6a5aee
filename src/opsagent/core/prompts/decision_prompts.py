"""Prompt templates for the decision engine."""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from opsagent.core.domain.decision import DecisionContext
from opsagent.core.domain.task import TaskInstance

ORCHESTRATION_SYSTEM_PROMPT = """\
You are the operations agent of a service business. You read inbound
messages (emails, webhooks, form submissions, scheduled triggers) and decide
what should happen next.

Rules:
- Only use actions from the AVAILABLE ACTIONS list.
- Prefer NO_ACTION over guessing when the request is unclear.
- Set "confidence" between 0 and 1. Be honest: low confidence routes the
  decision to a human.
- Set "requires_confirmation" on any action that is hard to undo.
- Use snake_case parameter names exactly as listed.
- "intent" is one of SALES_INQUIRY, SUPPORT_REQUEST, BILLING_QUESTION,
  PARTNERSHIP, SCHEDULING, GENERAL.

Respond with a single JSON object:
{
  "intent": "GENERAL",
  "confidence": 0.0,
  "reasoning": "short explanation",
  "priority": 3,
  "requires_approval": false,
  "actions": [
    {"type": "ACTION_TYPE", "params": {}, "priority": 3, "requires_confirmation": false}
  ],
  "alternatives": []
}
"""

TASK_AGENT_SYSTEM_PROMPT = """\
You are the task agent. A task changed and you decide which automated
follow-up actions to apply to it.

Rules:
- Only use SET_STATUS, SET_STAGE, ASSIGN_STAFF, TAG_TASK, PING_CUSTOMER,
  ADD_INTERNAL_NOTE, ESCALATE or NO_OP.
- React only to what changed; do not repeat a decision already recorded in
  the task history.
- Return NO_OP with a reason when nothing should change.

Parameters:
- SET_STATUS: {"to_status": "NEW|IN_PROGRESS|NEEDS_REVIEW|BLOCKED|DONE|CANCELLED"}
- SET_STAGE: {"to_stage_key": "..."}
- ASSIGN_STAFF: {"strategy": "LEAST_BUSY_IN_ROLE|KEEP_EXISTING|UNASSIGN", "role": "..."}
- TAG_TASK: {"add": [...], "remove": [...]}
- PING_CUSTOMER: {"channel": "email|sms", "template_hint": "..."}
- ADD_INTERNAL_NOTE: {"note": "..."}
- ESCALATE: {"reason": "...", "target_role": "..."}
- NO_OP: {"reason": "..."}

Respond with a single JSON object:
{"intent": "...", "confidence": 0.0, "reasoning": "...", "actions": [...]}
"""

INTENT_SYSTEM_PROMPT = """\
Classify the message. Respond with JSON:
{"intent": "...", "confidence": 0.0, "urgency": 1, "entities": {}, "keywords": []}
Urgency ranges from 1 (whenever) to 5 (emergency).
"""

ACTION_PARAMETER_HINTS: dict[str, str] = {
    "ASSIGN_PIPELINE": '{"intake_id": "...", "pipeline_id": "...", "notes": "..."}',
    "CREATE_EVENT": (
        '{"title": "...", "start_time": "ISO-8601", "end_time": "ISO-8601", "attendees": []}'
    ),
    "UPDATE_EVENT": '{"event_id": "...", "changes": {}}',
    "CANCEL_EVENT": '{"event_id": "...", "reason": "..."}',
    "SEND_NOTIFICATION": (
        '{"recipient_ids": [], "recipient_emails": [], "subject": "...", "body": "..."}'
    ),
    "TRIGGER_AUTOMATION": '{"workflow_id": "...", "inputs": {}}',
    "ESCALATE": '{"reason": "...", "level": 1, "priority": "high"}',
    "NO_ACTION": '{"reason": "..."}',
}


def _section(title: str, lines: Iterable[str]) -> str:
    body = "\n".join(lines) or "(none)"
    return f"## {title}\n{body}"


def _dump(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def build_decision_prompt(context: DecisionContext) -> str:
    """Render the user prompt for an inbound input."""
    agent_input = context.input
    sections = [
        _section(
            "INPUT",
            [
                f"source: {agent_input.source.value}",
                f"type: {agent_input.type}",
                f"received: {agent_input.timestamp.isoformat()}",
                f"metadata: {_dump(agent_input.metadata)}",
                f"structured_data: {_dump(agent_input.structured_data)}",
                "content:",
                agent_input.raw_content,
            ],
        ),
        _section(
            "ORGANIZATION",
            [
                f"id: {context.org.org_id}",
                f"timezone: {context.org.settings.timezone}",
                f"business_hours: {_dump(context.org.settings.business_hours)}",
            ],
        ),
        _section(
            "PIPELINES",
            (
                f"- {p.id}: {p.name} [{p.category}] stages={list(p.stages)}"
                for p in context.org.pipelines
                if p.is_active
            ),
        ),
        _section(
            "TEAM",
            (
                f"- {u.id}: {u.name} role={u.role} workload={u.current_workload}"
                for u in context.org.users
                if u.is_active
            ),
        ),
        _section(
            "AVAILABLE ACTIONS",
            (
                f"- {name}: {ACTION_PARAMETER_HINTS.get(name, '{}')}"
                for name in sorted(context.available_actions)
            ),
        ),
    ]
    if context.history is not None:
        sections.append(
            _section(
                "RECENT DECISIONS",
                (_dump(d) for d in context.history.recent_decisions),
            )
        )
        if context.history.prior_interactions:
            sections.append(
                _section(
                    "PRIOR INTERACTIONS",
                    (_dump(i) for i in context.history.prior_interactions),
                )
            )
    return "\n\n".join(sections)


def build_task_prompt(task: TaskInstance, event_type: str, payload: dict[str, Any]) -> str:
    """Render the user prompt for a task event."""
    record = task.to_record()
    history = record["agent_state"]["history"][-5:]
    return "\n\n".join(
        [
            _section("EVENT", [f"type: {event_type}", f"payload: {_dump(payload)}"]),
            _section(
                "TASK",
                [
                    f"id: {task.task_id}",
                    f"status: {task.status.value}",
                    f"pipeline: {task.pipeline_key}",
                    f"stage: {task.stage_key}",
                    f"assignee: {task.assigned_to_user_id}",
                    f"tags: {task.tags}",
                    f"data: {_dump(task.data)}",
                ],
            ),
            _section("RECENT AGENT DECISIONS", (_dump(h) for h in history)),
        ]
    )


def build_intent_prompt(raw_content: str) -> str:
    return f"Message:\n{raw_content}"
