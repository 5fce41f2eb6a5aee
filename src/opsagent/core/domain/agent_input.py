"""Inbound work items consumed by the decision engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from opsagent.core.utils.time import parse_timestamp, utc_now


class AgentInputSource(str, Enum):
    """Channel through which an input reached the agent."""

    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"
    DB_TRIGGER = "DB_TRIGGER"
    WORKER = "WORKER"
    API = "API"
    SCHEDULE = "SCHEDULE"


@dataclass(frozen=True)
class AgentInput:
    """A single unit of inbound work.

    Attributes:
        source: Channel the input arrived on.
        type: Free-form classification tag (e.g. ``"booking_request"``).
        raw_content: Unstructured text (email body, form message).
        structured_data: Parsed fields when the channel provides them.
        metadata: Sender and correlation hints.
        timestamp: When the input was received.
        correlation_id: Optional id linking the input to an upstream flow.
        input_id: Unique id of this input.
    """

    source: AgentInputSource
    type: str
    raw_content: str = ""
    structured_data: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    correlation_id: str | None = None
    input_id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the input for prompts, logs and storage."""
        return {
            "input_id": self.input_id,
            "source": self.source.value,
            "type": self.type,
            "raw_content": self.raw_content,
            "structured_data": self.structured_data,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentInput:
        """Deserialize an input, accepting lowercase source names."""
        return cls(
            source=AgentInputSource(str(data.get("source", "API")).upper()),
            type=str(data.get("type", "unknown")),
            raw_content=str(data.get("raw_content", "")),
            structured_data=data.get("structured_data"),
            metadata=dict(data.get("metadata") or {}),
            timestamp=parse_timestamp(data.get("timestamp")) or utc_now(),
            correlation_id=data.get("correlation_id"),
            input_id=str(data.get("input_id") or uuid4().hex),
        )
