"""Protocols for LLM access and the decision engine.

The LLM client is a black-box capability: a prompt goes in, text comes
out. Failures are raised as members of the ``LLMError`` family so that
callers can tell retryable from non-retryable problems.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from opsagent.core.domain.agent_input import AgentInput
    from opsagent.core.domain.decision import (
        AgentDecisionResult,
        DecisionContext,
        IntentClassification,
        LLMResponse,
    )


class LLMClientProtocol(Protocol):
    """Protocol for language model completions."""

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return the model's completion for ``prompt``.

        Raises:
            LLMError: Or one of its subclasses on any provider failure.
        """
        ...

    async def complete_json(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Return the completion parsed as a JSON object.

        Raises:
            LLMValidationError: If the completion is not a JSON object.
        """
        ...


class DecisionEngineProtocol(Protocol):
    """Turns a decision context into a typed decision without side effects."""

    async def make_decision(self, context: DecisionContext) -> AgentDecisionResult:
        ...

    async def classify_intent(self, agent_input: AgentInput) -> IntentClassification:
        ...

    def should_auto_execute(self, decision: AgentDecisionResult) -> bool:
        ...

    def requires_approval(self, decision: AgentDecisionResult) -> bool:
        ...
