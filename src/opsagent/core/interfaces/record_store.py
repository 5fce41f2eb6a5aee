"""Protocol for the opaque record store.

The pipeline only needs keyed CRUD plus simple counting. Records are plain
dicts with an ``"id"`` key; filters map field names to either a literal
value (equality) or an operator dict such as ``{"$in": [...]}``,
``{"$lte": value}`` or ``{"$ne": value}``.
"""

from __future__ import annotations

from typing import Any, Protocol


class RecordStoreProtocol(Protocol):
    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Point lookup by id; None when absent."""
        ...

    async def find(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        *,
        limit: int | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return records matching all filters, in insertion or ``order_by`` order."""
        ...

    async def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record, generating an id when missing."""
        ...

    async def update(
        self, collection: str, record_id: str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply a partial update atomically and return the new record.

        Raises:
            NotFoundError: If the record does not exist.
        """
        ...

    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        ...

    async def group_count(
        self,
        collection: str,
        field: str,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, int]:
        """Count matching records grouped by the value of ``field``."""
        ...
