"""In-memory domain event bus.

One instance is created at startup and injected into every component that
emits or listens. Handlers for one emission run concurrently and are
isolated from each other; the bus keeps a bounded history for debugging
and replay but offers no durability.
"""

from __future__ import annotations

import asyncio
import secrets
from collections import deque
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

import structlog

from opsagent.core.domain.events import (
    WILDCARD,
    DomainEvent,
    EmitOptions,
    EmitResult,
    HandlerInvocation,
)
from opsagent.core.interfaces.event_bus import EventBusProtocol, EventHandler
from opsagent.core.utils.time import monotonic_ms, utc_now

logger = structlog.get_logger(__name__)


def _subscription_id() -> str:
    return f"sub_{secrets.token_hex(4)}"


@dataclass
class _Subscription:
    subscription_id: str
    event_type: str
    handler: EventHandler
    once: bool = False


class InMemoryEventBus(EventBusProtocol):
    """Process-local publish/subscribe dispatcher."""

    def __init__(self, history_size: int = 100) -> None:
        self._subscriptions: dict[str, _Subscription] = {}
        self._history: deque[DomainEvent] = deque(maxlen=history_size or None)
        self._history_enabled = history_size > 0
        self._emitted_count = 0
        self._handler_errors = 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event_type: str, handler: EventHandler) -> str:
        return self._subscribe(event_type, handler, once=False)

    def once(self, event_type: str, handler: EventHandler) -> str:
        return self._subscribe(event_type, handler, once=True)

    def on_any(self, handler: EventHandler) -> str:
        """Subscribe to every event type."""
        return self._subscribe(WILDCARD, handler, once=False)

    def off(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None)
        if removed:
            logger.debug(
                "event_bus.unsubscribed",
                subscription_id=subscription_id,
                event_type=removed.event_type,
            )
        return removed is not None

    def remove_all_listeners(self, event_type: str | None = None) -> int:
        """Drop subscriptions for one type, or all of them. Returns the count removed."""
        if event_type is None:
            count = len(self._subscriptions)
            self._subscriptions.clear()
            return count
        doomed = [
            sid for sid, sub in self._subscriptions.items() if sub.event_type == event_type
        ]
        for sid in doomed:
            del self._subscriptions[sid]
        return len(doomed)

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return len(self._subscriptions)
        return sum(1 for sub in self._subscriptions.values() if sub.event_type == event_type)

    def event_names(self) -> list[str]:
        """Event types with at least one subscriber, in registration order."""
        return list(dict.fromkeys(sub.event_type for sub in self._subscriptions.values()))

    def _subscribe(self, event_type: str, handler: EventHandler, *, once: bool) -> str:
        subscription_id = _subscription_id()
        while subscription_id in self._subscriptions:
            subscription_id = _subscription_id()
        self._subscriptions[subscription_id] = _Subscription(
            subscription_id=subscription_id,
            event_type=event_type,
            handler=handler,
            once=once,
        )
        logger.debug(
            "event_bus.subscribed",
            subscription_id=subscription_id,
            event_type=event_type,
            once=once,
        )
        return subscription_id

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def emit(
        self,
        event_type: str,
        payload: dict[str, Any],
        options: EmitOptions | None = None,
    ) -> EmitResult:
        opts = options or EmitOptions()
        event = DomainEvent(
            type=event_type,
            payload=dict(payload),
            source=opts.source,
            correlation_id=opts.correlation_id,
            org_id=opts.org_id,
            metadata=dict(opts.metadata),
        )
        return await self._dispatch(event)

    async def _dispatch(self, event: DomainEvent) -> EmitResult:
        self._emitted_count += 1
        if self._history_enabled:
            self._history.append(event)

        targets = [
            sub
            for sub in self._subscriptions.values()
            if sub.event_type == event.type or sub.event_type == WILDCARD
        ]
        for sub in targets:
            if sub.once:
                self._subscriptions.pop(sub.subscription_id, None)

        invocations = await asyncio.gather(*(self._invoke(sub, event) for sub in targets))
        errors = tuple(
            f"{inv.subscription_id}: {inv.error}" for inv in invocations if not inv.success
        )
        self._handler_errors += len(errors)

        logger.debug(
            "event_bus.emitted",
            event_type=event.type,
            event_id=event.event_id,
            handlers=len(targets),
            errors=len(errors),
        )
        return EmitResult(
            event_type=event.type,
            event_id=event.event_id,
            timestamp=event.timestamp,
            handlers_invoked=len(targets),
            results=tuple(invocations),
            errors=errors,
        )

    async def _invoke(self, sub: _Subscription, event: DomainEvent) -> HandlerInvocation:
        started = monotonic_ms()
        try:
            await sub.handler(event)
        except Exception as exc:
            logger.warning(
                "event_bus.handler_failed",
                subscription_id=sub.subscription_id,
                event_type=event.type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return HandlerInvocation(
                subscription_id=sub.subscription_id,
                success=False,
                error=str(exc),
                execution_time_ms=monotonic_ms() - started,
            )
        return HandlerInvocation(
            subscription_id=sub.subscription_id,
            success=True,
            execution_time_ms=monotonic_ms() - started,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(
        self, event_type: str | None = None, limit: int | None = None
    ) -> list[DomainEvent]:
        """Most recent events last; optionally filtered by type and truncated."""
        events = [e for e in self._history if event_type is None or e.type == event_type]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    async def replay(self, event_id: str) -> EmitResult | None:
        """Re-emit a recorded event under a new id, marked as a replay."""
        original = next((e for e in self._history if e.event_id == event_id), None)
        if original is None:
            return None
        replayed = replace(
            original,
            event_id=f"evt_{uuid4().hex}",
            timestamp=utc_now(),
            metadata={
                **original.metadata,
                "replayed": True,
                "original_event_id": original.event_id,
            },
        )
        logger.info("event_bus.replayed", event_type=original.type, original_event_id=event_id)
        return await self._dispatch(replayed)

    def clear_history(self) -> None:
        self._history.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "event_types": len(self.event_names()),
            "emitted": self._emitted_count,
            "handler_errors": self._handler_errors,
            "history_size": len(self._history),
        }
