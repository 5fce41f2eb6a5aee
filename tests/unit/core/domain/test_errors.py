"""Tests for domain error types and the error_payload helper."""

import pytest

from opsagent.core.domain.errors import (
    APIKeyError,
    AuthenticationError,
    ConfigError,
    LLMError,
    NotFoundError,
    OpsAgentError,
    OrchestratorError,
    RateLimitError,
    error_payload,
)


class TestOpsAgentError:
    """Tests for OpsAgentError base exception."""

    def test_create_basic(self) -> None:
        err = OpsAgentError(message="Something failed")
        assert err.message == "Something failed"
        assert err.code == "opsagent_error"
        assert err.details == {}
        assert err.status_code is None
        assert str(err) == "Something failed"

    def test_subclass_codes(self) -> None:
        assert ConfigError("bad").code == "config_error"
        assert NotFoundError("gone").status_code == 404
        assert OrchestratorError("slow", code="rate_limited").code == "rate_limited"

    def test_can_be_raised_and_caught(self) -> None:
        with pytest.raises(OpsAgentError) as exc_info:
            raise NotFoundError("Task not found", details={"task_id": "t-1"})
        assert exc_info.value.details == {"task_id": "t-1"}


class TestLLMErrors:
    def test_retryable_flags(self) -> None:
        assert RateLimitError("429").retryable is True
        assert AuthenticationError("401").retryable is False
        assert LLMError("x").retryable is False

    def test_provider_recorded_in_details(self) -> None:
        err = RateLimitError("429", provider="openai", retry_after_ms=1500)
        assert err.provider == "openai"
        assert err.details == {"retry_after_ms": 1500, "provider": "openai"}
        assert err.status_code == 429

    def test_api_key_message(self) -> None:
        err = APIKeyError("anthropic")
        assert "anthropic" in err.message
        assert err.retryable is False


class TestErrorPayload:
    def test_domain_error(self) -> None:
        payload = error_payload(NotFoundError("missing", details={"id": "a"}))
        assert payload == {
            "success": False,
            "error": "missing",
            "error_type": "NotFoundError",
            "code": "not_found",
            "details": {"id": "a"},
        }

    def test_llm_error_includes_retryable_and_extra(self) -> None:
        payload = error_payload(RateLimitError("429"), {"decision_id": "d-1"})
        assert payload["retryable"] is True
        assert payload["decision_id"] == "d-1"
