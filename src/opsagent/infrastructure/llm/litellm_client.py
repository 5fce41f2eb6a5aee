"""
LLM client backed by LiteLLM.

The provider is selected entirely by the model string (``"gpt-4.1-mini"``,
``"anthropic/claude-sonnet-4-20250514"``, ``"ollama/llama3"``, ...). API
keys are read by LiteLLM from the usual provider environment variables.
Provider exceptions are mapped onto the opsagent LLM error taxonomy so
that the decision engine can tell retryable failures from permanent ones.
"""

import logging
import os
import time
from typing import Any

# Suppress LiteLLM verbose logging before import
os.environ.setdefault("LITELLM_LOG_LEVEL", "ERROR")
os.environ.setdefault("LITELLM_LOGGING", "off")

for _ln in ["LiteLLM", "litellm", "httpcore", "httpx"]:
    logging.getLogger(_ln).setLevel(logging.ERROR)

import litellm  # noqa: E402
import structlog  # noqa: E402

from opsagent.core.domain.config_schema import LLMSettings  # noqa: E402
from opsagent.core.domain.decision import LLMResponse, TokenUsage  # noqa: E402
from opsagent.core.domain.errors import (  # noqa: E402
    APIKeyError,
    AuthenticationError,
    ContentFilterError,
    LLMError,
    LLMTimeoutError,
    LLMValidationError,
    ModelOverloadedError,
    RateLimitError,
)
from opsagent.infrastructure.llm.base_client import BaseLLMClient  # noqa: E402

litellm.suppress_debug_info = True
litellm.drop_params = True

logger = structlog.get_logger(__name__)

# Error type names raised by LiteLLM, grouped by taxonomy member
_RATE_LIMIT_TYPES = frozenset({"RateLimitError"})
_TIMEOUT_TYPES = frozenset({"Timeout", "APITimeoutError"})
_OVERLOAD_TYPES = frozenset(
    {"ServiceUnavailableError", "APIConnectionError", "InternalServerError"}
)
_AUTH_TYPES = frozenset({"AuthenticationError", "PermissionDeniedError"})
_CONTENT_FILTER_TYPES = frozenset({"ContentPolicyViolationError"})
_VALIDATION_TYPES = frozenset(
    {"BadRequestError", "UnprocessableEntityError", "NotFoundError", "ContextWindowExceededError"}
)


def map_provider_error(error: Exception, provider: str) -> LLMError:
    """Translate a provider exception into an ``LLMError`` subclass.

    Classification looks at the exception type name first and falls back to
    keywords in the message, since provider SDKs wrap errors inconsistently.
    """
    if isinstance(error, LLMError):
        return error

    name = type(error).__name__
    message = str(error)
    lowered = message.lower()

    if name in _CONTENT_FILTER_TYPES or "content management policy" in lowered:
        return ContentFilterError(message, provider=provider)
    if name in _RATE_LIMIT_TYPES or "rate limit" in lowered or "429" in lowered:
        retry_after = getattr(error, "retry_after", None)
        retry_after_ms = int(float(retry_after) * 1000) if retry_after else None
        return RateLimitError(message, provider=provider, retry_after_ms=retry_after_ms)
    if "api key" in lowered and ("missing" in lowered or "not set" in lowered):
        return APIKeyError(provider)
    if name in _AUTH_TYPES or "invalid api key" in lowered or "401" in lowered:
        return AuthenticationError(message, provider=provider)
    if name in _TIMEOUT_TYPES or "timed out" in lowered or "timeout" in lowered:
        return LLMTimeoutError(message, provider=provider)
    if name in _OVERLOAD_TYPES or "overloaded" in lowered or "503" in lowered:
        return ModelOverloadedError(message, provider=provider)
    if name in _VALIDATION_TYPES:
        return LLMValidationError(message, provider=provider)
    return LLMError(message, provider=provider, details={"error_type": name})


class LiteLLMClient(BaseLLMClient):
    """Provider-agnostic client for the decision engine."""

    def __init__(self, settings: LLMSettings | None = None) -> None:
        super().__init__(settings)
        logger.info("llm.client_initialized", model=self.settings.model, provider=self.provider)

    async def _complete_once(
        self,
        prompt: str,
        *,
        system_prompt: str | None,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "timeout": self.settings.timeout_ms / 1000,
            "drop_params": True,
        }
        if self.settings.api_base:
            kwargs["api_base"] = self.settings.api_base

        start_time = time.time()
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as exc:
            raise map_provider_error(exc, self.provider) from exc
        latency_ms = int((time.time() - start_time) * 1000)
        return self._parse_response(response, latency_ms)

    def _parse_response(self, response: Any, latency_ms: int) -> LLMResponse:
        choice = response.choices[0]
        message = choice.message
        content = message.content or ""
        if not content and getattr(message, "refusal", None):
            raise ContentFilterError(
                f"Model refused: {message.refusal}", provider=self.provider
            )
        return LLMResponse(
            content=content,
            usage=self._extract_usage(response),
            model=getattr(response, "model", None) or self.settings.model,
            finish_reason=getattr(choice, "finish_reason", None),
            latency_ms=latency_ms,
        )

    @staticmethod
    def _extract_usage(response: Any) -> TokenUsage:
        """Extract token usage from response (handles both dict and object forms)."""
        raw_usage = getattr(response, "usage", None)
        if raw_usage is None:
            return TokenUsage()
        if isinstance(raw_usage, dict):
            return TokenUsage(
                prompt_tokens=int(raw_usage.get("prompt_tokens", 0) or 0),
                completion_tokens=int(raw_usage.get("completion_tokens", 0) or 0),
                total_tokens=int(raw_usage.get("total_tokens", 0) or 0),
            )
        return TokenUsage(
            prompt_tokens=getattr(raw_usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(raw_usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(raw_usage, "total_tokens", 0) or 0,
        )
