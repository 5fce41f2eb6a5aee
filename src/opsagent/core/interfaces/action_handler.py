"""Protocol for executor action handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from opsagent.core.domain.actions import (
        ActionExecutionContext,
        AgentAction,
        HandlerOutcome,
    )


class ActionHandler(Protocol):
    """Callable that performs one action kind.

    Handlers must check ``context.dry_run`` before any side effect and
    report failures through ``HandlerOutcome.success`` or by raising; the
    executor converts both into result values.
    """

    async def __call__(
        self, action: AgentAction, context: ActionExecutionContext
    ) -> HandlerOutcome:
        ...
