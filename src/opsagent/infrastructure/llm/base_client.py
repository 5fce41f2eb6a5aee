"""
Base LLM client with rate limiting, retries and JSON completion.

Concrete clients implement ``_complete_once``; everything else (local
sliding-window rate limits, exponential backoff with jitter for retryable
errors, ``retry_after`` hints, JSON extraction) lives here so that every
provider adapter behaves the same towards the decision engine.
"""

from __future__ import annotations

import asyncio
import json
import random
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any

import structlog

from opsagent.core.domain.config_schema import LLMSettings
from opsagent.core.domain.decision import LLMResponse
from opsagent.core.domain.errors import LLMError, LLMValidationError, RateLimitError
from opsagent.core.interfaces.llm import LLMClientProtocol

logger = structlog.get_logger(__name__)

MAX_BACKOFF_MS = 60_000
_WINDOW_SECONDS = 60.0
_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass
class RetryPolicy:
    """Retry policy for LLM calls."""

    max_retries: int = 3
    base_delay_ms: int = 1_000
    max_delay_ms: int = MAX_BACKOFF_MS

    def backoff_ms(self, attempt: int, retry_after_ms: int | None = None) -> int:
        """Delay before retry number ``attempt`` (0-based), honoring server hints."""
        if retry_after_ms is not None and retry_after_ms > 0:
            return min(retry_after_ms, self.max_delay_ms)
        exponential = self.base_delay_ms * (2**attempt)
        jitter = random.uniform(0, self.base_delay_ms)
        return int(min(exponential + jitter, self.max_delay_ms))


def extract_json(text: str) -> Any:
    """Parse JSON from a completion, tolerating Markdown code fences.

    Raises:
        ValueError: If no JSON document can be parsed.
    """
    candidate = text.strip()
    fenced = _FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object found in completion") from None
        try:
            return json.loads(candidate[start : end + 1])
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in completion: {exc}") from exc


class SlidingWindowRateLimiter:
    """Requests and tokens per rolling minute."""

    def __init__(self, requests_per_minute: int, tokens_per_minute: int) -> None:
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self._requests: deque[float] = deque()
        self._tokens: deque[tuple[float, int]] = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - _WINDOW_SECONDS
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] <= cutoff:
            self._tokens.popleft()

    def check(self, provider: str, *, now: float | None = None) -> None:
        """Raise ``RateLimitError`` if another request would exceed a limit."""
        current = time.monotonic() if now is None else now
        self._prune(current)
        if len(self._requests) >= self.requests_per_minute:
            retry_after = int((self._requests[0] + _WINDOW_SECONDS - current) * 1000)
            raise RateLimitError(
                f"Local request limit of {self.requests_per_minute}/min reached",
                provider=provider,
                retry_after_ms=max(retry_after, 0),
            )
        used_tokens = sum(count for _, count in self._tokens)
        if used_tokens >= self.tokens_per_minute:
            retry_after = int((self._tokens[0][0] + _WINDOW_SECONDS - current) * 1000)
            raise RateLimitError(
                f"Local token limit of {self.tokens_per_minute}/min reached",
                provider=provider,
                retry_after_ms=max(retry_after, 0),
            )

    def record(self, tokens: int, *, now: float | None = None) -> None:
        current = time.monotonic() if now is None else now
        self._requests.append(current)
        if tokens:
            self._tokens.append((current, tokens))


class BaseLLMClient(LLMClientProtocol, ABC):
    """Shared behavior for LLM adapters.

    Args:
        settings: LLM section of the configuration.
        provider: Provider label used in errors and logs.
    """

    def __init__(self, settings: LLMSettings | None = None, provider: str | None = None) -> None:
        self.settings = settings or LLMSettings()
        self.provider = provider or self.settings.provider
        self.retry_policy = RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay_ms=self.settings.retry_base_delay_ms,
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            requests_per_minute=self.settings.rate_limit.requests_per_minute,
            tokens_per_minute=self.settings.rate_limit.tokens_per_minute,
        )

    @abstractmethod
    async def _complete_once(
        self,
        prompt: str,
        *,
        system_prompt: str | None,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        """Perform exactly one provider call. Must raise ``LLMError`` subclasses."""

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        temp = self.settings.temperature if temperature is None else temperature
        tokens = self.settings.max_tokens if max_tokens is None else max_tokens

        attempt = 0
        while True:
            try:
                self.rate_limiter.check(self.provider)
                response = await self._complete_once(
                    prompt,
                    system_prompt=system_prompt,
                    temperature=temp,
                    max_tokens=tokens,
                )
            except LLMError as exc:
                if not exc.retryable or attempt >= self.retry_policy.max_retries:
                    logger.error(
                        "llm.completion_failed",
                        provider=self.provider,
                        code=exc.code,
                        retryable=exc.retryable,
                        attempts=attempt + 1,
                        error=str(exc)[:200],
                    )
                    raise
                retry_after = getattr(exc, "retry_after_ms", None)
                delay_ms = self.retry_policy.backoff_ms(attempt, retry_after)
                logger.warning(
                    "llm.completion_retry",
                    provider=self.provider,
                    code=exc.code,
                    attempt=attempt + 1,
                    backoff_ms=delay_ms,
                )
                attempt += 1
                await asyncio.sleep(delay_ms / 1000)
                continue

            self.rate_limiter.record(response.usage.total_tokens)
            logger.info(
                "llm.completion_success",
                provider=self.provider,
                model=response.model,
                tokens=response.usage.total_tokens,
                latency_ms=response.latency_ms,
            )
            return response

    async def complete_json(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        response = await self.complete(
            prompt,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        try:
            parsed = extract_json(response.content)
        except ValueError as exc:
            raise LLMValidationError(
                str(exc),
                provider=self.provider,
                details={"content_preview": response.content[:200]},
            ) from exc
        if not isinstance(parsed, dict):
            raise LLMValidationError(
                "Expected a JSON object in completion", provider=self.provider
            )
        return parsed
