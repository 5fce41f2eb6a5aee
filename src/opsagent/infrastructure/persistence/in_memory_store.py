"""In-memory record store for development, the CLI and tests.

Each collection is a dict of records keyed by id. Every operation runs
under a single ``asyncio.Lock`` so that a read-modify-write through
``update`` is atomic with respect to other coroutines.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog

from opsagent.core.domain.errors import NotFoundError
from opsagent.core.interfaces.record_store import RecordStoreProtocol
from opsagent.core.utils.time import parse_timestamp

logger = structlog.get_logger(__name__)


def _as_timestamp(value: Any) -> Any:
    """Parse ``value`` into an aware datetime, or return it unchanged."""
    if isinstance(value, (datetime, str)) and value != "":
        try:
            return parse_timestamp(value)
        except ValueError:
            return value
    return value


def _comparable_pair(value: Any, expected: Any) -> tuple[Any, Any]:
    """Compare timestamps as instants whenever either side is a datetime.

    Stored records usually hold ISO strings, possibly with non-UTC offsets,
    while callers filter with datetimes.
    """
    if isinstance(value, datetime) or isinstance(expected, datetime):
        value, expected = _as_timestamp(value), _as_timestamp(expected)
        if isinstance(value, datetime) != isinstance(expected, datetime):
            value = value.isoformat() if isinstance(value, datetime) else value
            expected = expected.isoformat() if isinstance(expected, datetime) else expected
    return value, expected


def _sort_key(value: Any) -> tuple[bool, int, Any]:
    """Missing values last; timestamps ordered by instant."""
    if value is None:
        return (True, 0, None)
    parsed = _as_timestamp(value)
    if isinstance(parsed, datetime):
        return (False, 0, parsed)
    return (False, 1, value)


def _match_filter(value: Any, condition: Any) -> bool:
    """Evaluate a single filter condition against a value.

    Supports operators: $eq, $ne, $gt, $gte, $lt, $lte, $in, $nin, $exists.
    If condition is a plain value (not a dict), uses equality check.
    """
    if not isinstance(condition, dict):
        left, right = _comparable_pair(value, condition)
        return left == right

    for op, expected in condition.items():
        if op == "$exists":
            if bool(expected) != (value is not None):
                return False
            continue
        if op in ("$in", "$nin"):
            found = any(_equal(value, item) for item in expected)
            if (op == "$in") != found:
                return False
            continue
        left, right = _comparable_pair(value, expected)
        if op == "$eq" and left != right:
            return False
        if op == "$ne" and left == right:
            return False
        if op in ("$gt", "$gte", "$lt", "$lte"):
            if left is None:
                return False
            if op == "$gt" and not (left > right):
                return False
            if op == "$gte" and not (left >= right):
                return False
            if op == "$lt" and not (left < right):
                return False
            if op == "$lte" and not (left <= right):
                return False
    return True


def _equal(value: Any, expected: Any) -> bool:
    left, right = _comparable_pair(value, expected)
    return left == right


def _lookup(record: dict[str, Any], path: str) -> Any:
    """Resolve dotted paths such as ``"timeline.breached_at"``."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _matches(record: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(_match_filter(_lookup(record, key), cond) for key, cond in filters.items())


class InMemoryRecordStore(RecordStoreProtocol):
    """Dict-backed implementation of the record store port."""

    def __init__(self, seed: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        for collection, records in (seed or {}).items():
            bucket = self._collections.setdefault(collection, {})
            for record in records:
                record_id = str(record.get("id") or uuid4().hex)
                bucket[record_id] = {**copy.deepcopy(record), "id": record_id}

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        async with self._lock:
            record = self._collections.get(collection, {}).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    async def find(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        *,
        limit: int | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            records = [
                r for r in self._collections.get(collection, {}).values() if _matches(r, filters)
            ]
        if order_by:
            descending = order_by.startswith("-")
            key = order_by.lstrip("-")
            records.sort(
                key=lambda r: _sort_key(_lookup(r, key)),
                reverse=descending,
            )
        if limit is not None:
            records = records[:limit]
        return [copy.deepcopy(r) for r in records]

    async def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        record_id = str(record.get("id") or uuid4().hex)
        stored = {**copy.deepcopy(record), "id": record_id}
        async with self._lock:
            self._collections.setdefault(collection, {})[record_id] = stored
        logger.debug("record_store.created", collection=collection, record_id=record_id)
        return copy.deepcopy(stored)

    async def update(
        self, collection: str, record_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._lock:
            bucket = self._collections.get(collection, {})
            if record_id not in bucket:
                raise NotFoundError(
                    f"{collection} record not found: {record_id}",
                    details={"collection": collection, "record_id": record_id},
                )
            bucket[record_id].update(copy.deepcopy(fields))
            updated = copy.deepcopy(bucket[record_id])
        logger.debug(
            "record_store.updated",
            collection=collection,
            record_id=record_id,
            fields=sorted(fields),
        )
        return updated

    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        async with self._lock:
            return sum(
                1 for r in self._collections.get(collection, {}).values() if _matches(r, filters)
            )

    async def group_count(
        self,
        collection: str,
        field: str,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, int]:
        counts: dict[str, int] = {}
        async with self._lock:
            for record in self._collections.get(collection, {}).values():
                if not _matches(record, filters):
                    continue
                key = str(_lookup(record, field))
                counts[key] = counts.get(key, 0) + 1
        return counts
