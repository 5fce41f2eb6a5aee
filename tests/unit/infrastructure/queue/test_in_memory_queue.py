"""Tests for InMemoryJobQueue and QueueNotifier."""

from datetime import timedelta

import pytest

from opsagent.core.domain.errors import ValidationError
from opsagent.core.utils.time import utc_now
from opsagent.infrastructure.notifications.queue_notifier import (
    SEND_NOTIFICATION_JOB,
    QueueNotifier,
)
from opsagent.infrastructure.queue.in_memory_queue import InMemoryJobQueue


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


class TestInMemoryJobQueue:
    async def test_priority_then_fifo(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue("a", {"n": 1})
        await queue.enqueue("a", {"n": 2}, priority=5)
        await queue.enqueue("a", {"n": 3})

        assert [j.payload["n"] for j in queue.drain()] == [2, 1, 3]
        assert len(queue) == 0

    async def test_dedup_while_queued(self, queue: InMemoryJobQueue) -> None:
        first = await queue.enqueue("a", {}, dedup_key="k")
        second = await queue.enqueue("a", {}, dedup_key="k")
        assert first == second
        assert len(queue) == 1

        queue.drain()
        third = await queue.enqueue("a", {}, dedup_key="k")
        assert third != first

    async def test_delayed_jobs_wait(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue("a", {"n": 1}, delay_ms=60_000)

        assert queue.drain() == []
        assert len(queue) == 1
        later = queue.drain(now=utc_now() + timedelta(minutes=2))
        assert [j.payload["n"] for j in later] == [1]

    async def test_drain_filters_by_type(self, queue: InMemoryJobQueue) -> None:
        await queue.enqueue("a", {"n": 1})
        await queue.enqueue("b", {"n": 2})

        drained = queue.drain(["b"])

        assert [j.job_type for j in drained] == ["b"]
        assert [j.job_type for j in queue.pending()] == ["a"]

    async def test_pending_does_not_remove(self, queue: InMemoryJobQueue) -> None:
        job_id = await queue.enqueue("a", {"n": 1}, priority=2)

        pending = queue.pending("a")

        assert pending[0].job_id == job_id
        assert pending[0].to_dict()["priority"] == 2
        assert queue.pending("b") == []
        assert len(queue) == 1


class TestQueueNotifier:
    async def test_send_enqueues_notification_job(self, queue: InMemoryJobQueue) -> None:
        notifier = QueueNotifier(queue)

        job_id = await notifier.send(
            "email", "ada@example.com", template_hint="reminder", payload={"title": "Kickoff"}
        )

        job = queue.pending(SEND_NOTIFICATION_JOB)[0]
        assert job.job_id == job_id
        assert job.payload == {
            "channel": "email",
            "recipient": "ada@example.com",
            "template_hint": "reminder",
            "payload": {"title": "Kickoff"},
        }

    async def test_missing_recipient(self, queue: InMemoryJobQueue) -> None:
        with pytest.raises(ValidationError):
            await QueueNotifier(queue).send("sms", None)
        assert len(queue) == 0
