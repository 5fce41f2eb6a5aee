"""Domain-specific exception types for opsagent.

Action execution failures are never raised: executors convert them into
result values. The exceptions below cover configuration problems, store
lookups, orchestration guards and the LLM failure taxonomy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class OpsAgentError(Exception):
    """Base exception for opsagent domain errors."""

    message: str
    code: str = "opsagent_error"
    details: Dict[str, Any] | None = None
    status_code: int | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.details is None:
            self.details = {}


class ConfigError(OpsAgentError):
    """Error raised for configuration failures."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="config_error", details=details)


class NotFoundError(OpsAgentError):
    """Error raised when a record is not found."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="not_found", details=details, status_code=404)


class ValidationError(OpsAgentError):
    """Error raised for validation failures of domain input."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="validation_error", details=details)


class ExecutorConfigurationError(OpsAgentError):
    """Error raised when an executor is built or invoked incorrectly."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="executor_configuration", details=details)


class OrchestratorError(OpsAgentError):
    """Error raised by the orchestration agent (rate limits, unknown decisions)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "orchestrator_error",
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code=code, details=details)


# ---------------------------------------------------------------------------
# LLM error taxonomy
# ---------------------------------------------------------------------------


class LLMError(OpsAgentError):
    """Error raised for LLM invocation failures.

    ``retryable`` tells callers whether repeating the same decision could
    succeed (rate limits, timeouts, overload) or must go to a human
    (authentication, validation, content filtering).
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "LLM_ERROR",
        provider: str = "unknown",
        status_code: int | None = None,
        retryable: bool = False,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        details.setdefault("provider", provider)
        self.provider = provider
        self.retryable = retryable
        super().__init__(message=message, code=code, details=details, status_code=status_code)


class RateLimitError(LLMError):
    """Provider or local rate limit exceeded."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "unknown",
        retry_after_ms: int | None = None,
    ) -> None:
        self.retry_after_ms = retry_after_ms
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            provider=provider,
            status_code=429,
            retryable=True,
            details={"retry_after_ms": retry_after_ms},
        )


class AuthenticationError(LLMError):
    """Credentials were rejected by the provider."""

    def __init__(self, message: str, *, provider: str = "unknown") -> None:
        super().__init__(
            message, code="AUTHENTICATION_FAILED", provider=provider, status_code=401
        )


class APIKeyError(LLMError):
    """No API key is configured for the provider."""

    def __init__(self, provider: str = "unknown") -> None:
        super().__init__(
            f"API key missing for provider: {provider}",
            code="API_KEY_MISSING",
            provider=provider,
        )


class LLMValidationError(LLMError):
    """The request or the response failed validation."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "unknown",
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            provider=provider,
            status_code=400,
            details=details,
        )


class LLMTimeoutError(LLMError):
    """The provider did not answer in time."""

    def __init__(self, message: str, *, provider: str = "unknown") -> None:
        super().__init__(
            message, code="TIMEOUT", provider=provider, status_code=408, retryable=True
        )


class ContentFilterError(LLMError):
    """The provider refused the prompt or the completion."""

    def __init__(self, message: str, *, provider: str = "unknown") -> None:
        super().__init__(
            message, code="CONTENT_FILTERED", provider=provider, status_code=400
        )


class ModelOverloadedError(LLMError):
    """The model is temporarily overloaded."""

    def __init__(self, message: str, *, provider: str = "unknown") -> None:
        super().__init__(
            message,
            code="MODEL_OVERLOADED",
            provider=provider,
            status_code=503,
            retryable=True,
        )


def error_payload(error: OpsAgentError, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Convert a domain error into a JSON-serializable payload for events and logs."""
    payload: Dict[str, Any] = {
        "success": False,
        "error": str(error),
        "error_type": type(error).__name__,
        "code": error.code,
        "details": error.details or {},
    }
    if isinstance(error, LLMError):
        payload["retryable"] = error.retryable
    if extra:
        payload.update(extra)
    return payload
