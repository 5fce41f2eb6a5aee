"""Prompt templates used by the decision engine."""

from opsagent.core.prompts.decision_prompts import (
    INTENT_SYSTEM_PROMPT,
    ORCHESTRATION_SYSTEM_PROMPT,
    TASK_AGENT_SYSTEM_PROMPT,
    build_decision_prompt,
    build_intent_prompt,
    build_task_prompt,
)

__all__ = [
    "INTENT_SYSTEM_PROMPT",
    "ORCHESTRATION_SYSTEM_PROMPT",
    "TASK_AGENT_SYSTEM_PROMPT",
    "build_decision_prompt",
    "build_intent_prompt",
    "build_task_prompt",
]
