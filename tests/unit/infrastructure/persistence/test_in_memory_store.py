"""Tests for InMemoryRecordStore."""

from datetime import datetime, timedelta, timezone

import pytest

from opsagent.core.domain.errors import NotFoundError
from opsagent.infrastructure.persistence.in_memory_store import InMemoryRecordStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)


@pytest.fixture
def seeded() -> InMemoryRecordStore:
    return InMemoryRecordStore(
        seed={
            "tasks": [
                {"id": "a", "status": "NEW", "score": 3, "due": T0.isoformat()},
                {"id": "b", "status": "DONE", "score": 7, "due": T1.isoformat()},
                {"id": "c", "status": "NEW", "score": 5, "timeline": {"breached_at": None}},
            ]
        }
    )


class TestCrud:
    async def test_create_assigns_id_and_copies(self) -> None:
        store = InMemoryRecordStore()
        source = {"name": "x", "tags": ["one"]}

        created = await store.create("things", source)
        source["tags"].append("two")

        assert created["id"]
        fetched = await store.get("things", created["id"])
        assert fetched == {"name": "x", "tags": ["one"], "id": created["id"]}

    async def test_get_returns_detached_copy(self, seeded) -> None:
        record = await seeded.get("tasks", "a")
        record["status"] = "MUTATED"
        assert (await seeded.get("tasks", "a"))["status"] == "NEW"

    async def test_get_missing(self, seeded) -> None:
        assert await seeded.get("tasks", "zzz") is None
        assert await seeded.get("nope", "a") is None

    async def test_update_merges_fields(self, seeded) -> None:
        updated = await seeded.update("tasks", "a", {"status": "IN_PROGRESS"})
        assert updated["status"] == "IN_PROGRESS"
        assert updated["score"] == 3

    async def test_update_missing_raises(self, seeded) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await seeded.update("tasks", "zzz", {"status": "DONE"})
        assert exc_info.value.details["record_id"] == "zzz"


class TestQueries:
    async def test_plain_equality(self, seeded) -> None:
        ids = [r["id"] for r in await seeded.find("tasks", {"status": "NEW"})]
        assert sorted(ids) == ["a", "c"]

    @pytest.mark.parametrize(
        ("filters", "expected"),
        [
            ({"score": {"$gt": 3}}, ["b", "c"]),
            ({"score": {"$gte": 3, "$lt": 7}}, ["a", "c"]),
            ({"score": {"$lte": 3}}, ["a"]),
            ({"status": {"$ne": "NEW"}}, ["b"]),
            ({"status": {"$in": ["DONE", "CANCELLED"]}}, ["b"]),
            ({"status": {"$nin": ["DONE"]}}, ["a", "c"]),
            ({"due": {"$exists": True}}, ["a", "b"]),
            ({"due": {"$exists": False}}, ["c"]),
            ({"due": {"$lt": T0 + timedelta(minutes=30)}}, ["a"]),
            ({"timeline.breached_at": None}, ["a", "b", "c"]),
        ],
    )
    async def test_operators(self, seeded, filters, expected) -> None:
        found = await seeded.find("tasks", filters)
        assert sorted(r["id"] for r in found) == expected

    async def test_order_and_limit(self, seeded) -> None:
        ascending = await seeded.find("tasks", order_by="score")
        descending = await seeded.find("tasks", order_by="-score", limit=2)

        assert [r["id"] for r in ascending] == ["a", "c", "b"]
        assert [r["id"] for r in descending] == ["b", "c"]

    async def test_missing_sort_values_go_last(self, seeded) -> None:
        ordered = await seeded.find("tasks", order_by="due")
        assert [r["id"] for r in ordered] == ["a", "b", "c"]

    async def test_count_and_group_count(self, seeded) -> None:
        assert await seeded.count("tasks") == 3
        assert await seeded.count("tasks", {"status": "NEW"}) == 2
        assert await seeded.group_count("tasks", "status") == {"NEW": 2, "DONE": 1}
        assert await seeded.group_count("tasks", "status", {"score": {"$gt": 4}}) == {
            "DONE": 1,
            "NEW": 1,
        }
        assert await seeded.count("empty") == 0


class TestTimestampOffsets:
    @pytest.fixture
    def offsets(self) -> InMemoryRecordStore:
        # 11:30 UTC written as 13:30+02:00 and 12:15 UTC written as 07:15-05:00,
        # so string order disagrees with time order.
        early = (T0 - timedelta(minutes=30)).astimezone(timezone(timedelta(hours=2)))
        late = (T0 + timedelta(minutes=15)).astimezone(timezone(timedelta(hours=-5)))
        return InMemoryRecordStore(
            seed={
                "reminders": [
                    {"id": "early", "at": early.isoformat()},
                    {"id": "late", "at": late.isoformat()},
                    {"id": "utc", "at": "2026-03-01T12:00:00Z"},
                ]
            }
        )

    async def test_range_filters_compare_instants(self, offsets) -> None:
        due = await offsets.find("reminders", {"at": {"$lte": T0 - timedelta(minutes=15)}})
        later = await offsets.find("reminders", {"at": {"$gt": T0}})

        assert [r["id"] for r in due] == ["early"]
        assert [r["id"] for r in later] == ["late"]

    async def test_equality_across_offsets(self, offsets) -> None:
        tokyo = T0.astimezone(timezone(timedelta(hours=9)))
        same = await offsets.find("reminders", {"at": tokyo})
        assert [r["id"] for r in same] == ["utc"]

    async def test_order_by_uses_instants(self, offsets) -> None:
        ordered = await offsets.find("reminders", order_by="at")
        assert [r["id"] for r in ordered] == ["early", "utc", "late"]
