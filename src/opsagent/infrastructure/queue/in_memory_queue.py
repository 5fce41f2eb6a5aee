"""In-memory job queue used by the CLI and tests.

Stands in for the external at-least-once dispatch facility: jobs are held
in priority order (higher first, then FIFO) and deduplicated by key while
they are still queued.
"""

from __future__ import annotations

import heapq
import itertools
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import structlog

from opsagent.core.interfaces.job_queue import JobQueueProtocol
from opsagent.core.utils.time import utc_now

logger = structlog.get_logger(__name__)


@dataclass
class QueuedJob:
    job_type: str
    payload: dict[str, Any]
    job_id: str = field(default_factory=lambda: uuid4().hex)
    priority: int = 0
    available_at: datetime = field(default_factory=utc_now)
    dedup_key: str | None = None
    enqueued_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "payload": self.payload,
            "priority": self.priority,
            "available_at": self.available_at.isoformat(),
            "dedup_key": self.dedup_key,
        }


class InMemoryJobQueue(JobQueueProtocol):
    def __init__(self) -> None:
        self._heap: list[tuple[int, int, QueuedJob]] = []
        self._sequence = itertools.count()
        self._dedup: dict[str, str] = {}

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        delay_ms: int = 0,
        dedup_key: str | None = None,
    ) -> str:
        if dedup_key and dedup_key in self._dedup:
            logger.debug("job_queue.deduplicated", job_type=job_type, dedup_key=dedup_key)
            return self._dedup[dedup_key]

        job = QueuedJob(
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            available_at=utc_now() + timedelta(milliseconds=max(delay_ms, 0)),
            dedup_key=dedup_key,
        )
        heapq.heappush(self._heap, (-priority, next(self._sequence), job))
        if dedup_key:
            self._dedup[dedup_key] = job.job_id
        logger.info(
            "job_queue.enqueued",
            job_id=job.job_id,
            job_type=job_type,
            priority=priority,
            delay_ms=delay_ms,
        )
        return job.job_id

    def pending(self, job_type: str | None = None) -> list[QueuedJob]:
        """Queued jobs in dispatch order without removing them."""
        ordered = [job for _, _, job in sorted(self._heap)]
        return [job for job in ordered if job_type is None or job.job_type == job_type]

    def drain(
        self, job_types: Collection[str] | None = None, *, now: datetime | None = None
    ) -> list[QueuedJob]:
        """Remove and return every due job (of ``job_types``), in dispatch order."""
        cutoff = now or utc_now()
        due: list[QueuedJob] = []
        remaining: list[tuple[int, int, QueuedJob]] = []
        while self._heap:
            entry = heapq.heappop(self._heap)
            job = entry[2]
            wanted = job_types is None or job.job_type in job_types
            if wanted and job.available_at <= cutoff:
                due.append(job)
                if job.dedup_key:
                    self._dedup.pop(job.dedup_key, None)
            else:
                remaining.append(entry)
        for entry in remaining:
            heapq.heappush(self._heap, entry)
        return due

    def __len__(self) -> int:
        return len(self._heap)
