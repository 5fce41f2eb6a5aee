"""Protocol for the external at-least-once job dispatch facility."""

from __future__ import annotations

from typing import Any, Protocol


class JobQueueProtocol(Protocol):
    """Follow-up work is pushed here instead of being performed inline.

    Consumers must tolerate duplicate delivery: handlers re-read current
    state before mutating.
    """

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        delay_ms: int = 0,
        dedup_key: str | None = None,
    ) -> str:
        """Queue a job and return its id.

        When ``dedup_key`` matches a job that is still queued, the existing
        job id is returned and nothing new is queued.
        """
        ...
