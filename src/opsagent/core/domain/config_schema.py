"""
Configuration Schema Validation

Pydantic models for the opsagent YAML configuration. Every section has
defaults so that an empty file yields a usable configuration; unknown keys
are rejected so that typos surface early.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_INTERVAL_PATTERN = r"^\d+[smhd]?$"


class ExecutorSettings(BaseModel):
    """Limits and retry policy of the action executor (milliseconds)."""

    model_config = ConfigDict(extra="forbid")

    dry_run: bool = False
    max_execution_time_ms: int = Field(300_000, gt=0)
    action_timeout_ms: int = Field(30_000, gt=0)
    retry_attempts: int = Field(2, ge=0, le=10)
    retry_delay_ms: int = Field(1_000, ge=0)
    stop_on_failure: bool = False
    enable_rollback: bool = True


class DecisionSettings(BaseModel):
    """Confidence thresholds used to route decisions."""

    model_config = ConfigDict(extra="forbid")

    auto_execute_threshold: float = Field(0.85, ge=0.0, le=1.0)
    require_approval_threshold: float = Field(0.5, ge=0.0, le=1.0)
    fallback_confidence: float = Field(0.3, ge=0.0, le=1.0)
    approval_ttl_minutes: int = Field(60, gt=0)

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "DecisionSettings":
        """The approval band must sit below the auto-execute threshold."""
        if self.require_approval_threshold > self.auto_execute_threshold:
            raise ValueError(
                "require_approval_threshold must not exceed auto_execute_threshold"
            )
        return self


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requests_per_minute: int = Field(60, gt=0)
    tokens_per_minute: int = Field(100_000, gt=0)


class LLMSettings(BaseModel):
    """LLM client configuration."""

    model_config = ConfigDict(extra="forbid")

    model: str = Field("gpt-4.1-mini", min_length=1, description="LiteLLM model string")
    provider: str = "openai"
    api_base: Optional[str] = None
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(2_000, gt=0)
    timeout_ms: int = Field(30_000, gt=0)
    max_retries: int = Field(3, ge=0, le=10)
    retry_base_delay_ms: int = Field(1_000, ge=0)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)


class OrchestratorSettings(BaseModel):
    """Per-organization guard rails of the orchestration agent."""

    model_config = ConfigDict(extra="forbid")

    max_decisions_per_minute: int = Field(30, gt=0)
    max_decisions_per_hour: int = Field(500, gt=0)
    recent_decision_limit: int = Field(10, ge=0)


class SLASettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    warning_threshold: float = Field(0.8, gt=0.0)
    breach_threshold: float = Field(1.0, gt=0.0)

    @model_validator(mode="after")
    def validate_order(self) -> "SLASettings":
        if self.warning_threshold > self.breach_threshold:
            raise ValueError("warning_threshold must not exceed breach_threshold")
        return self


class SchedulerSettings(BaseModel):
    """Intervals of the periodic sweep jobs (``'15m'``, ``'30s'``, ...)."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    sla_check_interval: str = Field("15m", pattern=_INTERVAL_PATTERN)
    reminder_scan_interval: str = Field("1m", pattern=_INTERVAL_PATTERN)
    stale_cleanup_interval: str = Field("5m", pattern=_INTERVAL_PATTERN)
    stats_interval: str = Field("15m", pattern=_INTERVAL_PATTERN)
    reminder_batch_size: int = Field(100, gt=0)
    stale_after_minutes: int = Field(30, gt=0)
    max_retries: int = Field(3, ge=0)
    run_history_limit: int = Field(50, gt=0)
    sla: SLASettings = Field(default_factory=SLASettings)

    @field_validator(
        "sla_check_interval",
        "reminder_scan_interval",
        "stale_cleanup_interval",
        "stats_interval",
        mode="before",
    )
    @classmethod
    def normalize_interval(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class EventBusSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    history_size: int = Field(100, ge=0)


class OpsAgentSettings(BaseModel):
    """Root configuration object."""

    model_config = ConfigDict(extra="forbid")

    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    decision: DecisionSettings = Field(default_factory=DecisionSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    event_bus: EventBusSettings = Field(default_factory=EventBusSettings)
