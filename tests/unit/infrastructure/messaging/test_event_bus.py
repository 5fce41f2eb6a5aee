"""Tests for InMemoryEventBus."""

import pytest

from opsagent.core.domain.events import EmitOptions
from opsagent.infrastructure.messaging.event_bus import InMemoryEventBus


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus(history_size=3)


class TestSubscriptions:
    async def test_on_receives_matching_events(self, bus: InMemoryEventBus) -> None:
        received = []

        async def handler(event) -> None:
            received.append(event)

        bus.on("task:created", handler)
        await bus.emit("task:created", {"task_id": "t-1"}, EmitOptions(org_id="org-1"))
        await bus.emit("task:updated", {"task_id": "t-1"})

        assert len(received) == 1
        assert received[0].payload == {"task_id": "t-1"}
        assert received[0].org_id == "org-1"
        assert received[0].source == "system"

    async def test_once_fires_a_single_time(self, bus: InMemoryEventBus) -> None:
        calls = []

        async def handler(event) -> None:
            calls.append(event.type)

        bus.once("ping", handler)
        await bus.emit("ping", {})
        await bus.emit("ping", {})

        assert calls == ["ping"]
        assert bus.listener_count("ping") == 0

    async def test_on_any_sees_everything(self, bus: InMemoryEventBus) -> None:
        seen = []

        async def handler(event) -> None:
            seen.append(event.type)

        bus.on_any(handler)
        await bus.emit("a", {})
        await bus.emit("b", {})

        assert seen == ["a", "b"]

    async def test_off_and_remove_all(self, bus: InMemoryEventBus) -> None:
        async def handler(event) -> None:
            return None

        first = bus.on("a", handler)
        bus.on("a", handler)
        bus.on("b", handler)

        assert bus.event_names() == ["a", "b"]
        assert bus.off(first) is True
        assert bus.off(first) is False
        assert bus.remove_all_listeners("a") == 1
        assert bus.listener_count() == 1
        assert bus.remove_all_listeners() == 1
        assert bus.event_names() == []


class TestEmission:
    async def test_failing_handler_does_not_block_others(self, bus: InMemoryEventBus) -> None:
        delivered = []

        async def broken(event) -> None:
            raise RuntimeError("boom")

        async def healthy(event) -> None:
            delivered.append(event.event_id)

        broken_id = bus.on("x", broken)
        bus.on("x", healthy)

        result = await bus.emit("x", {})

        assert result.handlers_invoked == 2
        assert delivered == [result.event_id]
        assert result.all_succeeded is False
        assert result.errors == (f"{broken_id}: boom",)
        assert bus.stats()["handler_errors"] == 1

    async def test_emit_without_listeners(self, bus: InMemoryEventBus) -> None:
        result = await bus.emit("nobody", {"a": 1})
        assert result.handlers_invoked == 0
        assert result.all_succeeded is True


class TestHistory:
    async def test_history_is_bounded_and_filterable(self, bus: InMemoryEventBus) -> None:
        for index in range(4):
            await bus.emit("a" if index % 2 else "b", {"n": index})

        history = bus.get_history()
        assert [e.payload["n"] for e in history] == [1, 2, 3]
        assert [e.payload["n"] for e in bus.get_history("a")] == [1, 3]
        assert [e.payload["n"] for e in bus.get_history(limit=1)] == [3]
        assert bus.get_history(limit=0) == []

    async def test_replay_reemits_with_new_id(self, bus: InMemoryEventBus) -> None:
        received = []

        async def handler(event) -> None:
            received.append(event)

        original = await bus.emit("a", {"n": 1})
        bus.on("a", handler)

        replay = await bus.replay(original.event_id)

        assert replay is not None
        assert replay.event_id != original.event_id
        assert received[0].payload == {"n": 1}
        assert received[0].metadata == {
            "replayed": True,
            "original_event_id": original.event_id,
        }

    async def test_replay_unknown_event(self, bus: InMemoryEventBus) -> None:
        assert await bus.replay("evt_missing") is None

    async def test_disabled_history(self) -> None:
        bus = InMemoryEventBus(history_size=0)
        await bus.emit("a", {})
        assert bus.get_history() == []
        assert bus.stats()["emitted"] == 1

    async def test_clear_history(self, bus: InMemoryEventBus) -> None:
        await bus.emit("a", {})
        bus.clear_history()
        assert bus.stats()["history_size"] == 0
