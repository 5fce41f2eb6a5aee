"""Protocol for the in-process domain event bus."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from opsagent.core.domain.events import DomainEvent, EmitOptions, EmitResult

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBusProtocol(Protocol):
    """Publish/subscribe fan-out for domain events.

    Implementations must isolate handler failures: one failing subscriber
    never prevents delivery to the others and never fails ``emit``.
    """

    async def emit(
        self,
        event_type: str,
        payload: dict[str, Any],
        options: EmitOptions | None = None,
    ) -> EmitResult:
        """Notify every subscriber of ``event_type`` plus wildcard subscribers."""
        ...

    def on(self, event_type: str, handler: EventHandler) -> str:
        """Register a handler and return its subscription id."""
        ...

    def once(self, event_type: str, handler: EventHandler) -> str:
        """Register a handler that is removed after its first invocation."""
        ...

    def off(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False for unknown ids."""
        ...
