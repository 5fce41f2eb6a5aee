"""UTC time helpers shared by executors, schedulers and domain models."""

from __future__ import annotations

import time
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current UTC timestamp."""
    return datetime.now(UTC)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware datetime.

    Naive values are assumed to be UTC. ``None`` and empty strings map to
    ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime to ISO-8601 or return ``None``."""
    return value.isoformat() if value else None


def monotonic_ms() -> int:
    """Monotonic clock in milliseconds for measuring durations."""
    return int(time.monotonic() * 1000)
