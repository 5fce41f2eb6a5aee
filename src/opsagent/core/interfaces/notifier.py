"""Protocol for outbound customer and staff notifications."""

from __future__ import annotations

from typing import Any, Protocol


class NotifierProtocol(Protocol):
    async def send(
        self,
        channel: str,
        recipient: str | None,
        *,
        template_hint: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Hand a message to the delivery service and return its tracking id."""
        ...
