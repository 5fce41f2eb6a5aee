"""Test configuration and shared fixtures."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from opsagent.core.domain.decision import LLMResponse, TokenUsage
from opsagent.core.domain.events import DomainEvent
from opsagent.core.domain.task import TASKS_COLLECTION, TaskInstance
from opsagent.infrastructure.messaging.event_bus import InMemoryEventBus
from opsagent.infrastructure.persistence.in_memory_store import InMemoryRecordStore
from opsagent.infrastructure.queue.in_memory_queue import InMemoryJobQueue


def _llm_reply(payload: dict[str, Any] | str) -> LLMResponse:
    """Build an LLMResponse whose content is ``payload`` (JSON-encoded if a dict)."""
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return LLMResponse(
        content=content,
        usage=TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30),
        model="test-model",
        finish_reason="stop",
    )


@pytest.fixture
def llm_reply() -> Callable[[dict[str, Any] | str], LLMResponse]:
    return _llm_reply


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus(history_size=200)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def llm_client() -> AsyncMock:
    """LLM client double; set ``complete.return_value`` with ``llm_reply``."""
    client = AsyncMock()
    client.complete.return_value = _llm_reply(
        {"intent": "GENERAL", "confidence": 0.9, "reasoning": "ok", "actions": []}
    )
    return client


@pytest.fixture
def captured_events(event_bus: InMemoryEventBus) -> list[DomainEvent]:
    """Every event emitted on ``event_bus`` during the test, in order."""
    events: list[DomainEvent] = []

    async def _capture(event: DomainEvent) -> None:
        events.append(event)

    event_bus.on_any(_capture)
    return events


@pytest.fixture
def make_task(store: InMemoryRecordStore) -> Callable[..., Awaitable[TaskInstance]]:
    """Insert a task into the store and return it."""

    async def _make(task_id: str = "task-1", org_id: str = "org-1", **fields: Any) -> TaskInstance:
        task = TaskInstance(task_id=task_id, org_id=org_id, **fields)
        await store.create(TASKS_COLLECTION, task.to_record())
        return task

    return _make
