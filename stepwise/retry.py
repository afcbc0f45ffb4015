"""Retry decorator for model adaptors.

RetryingModel wraps any ModelAdaptor and retries failed calls with
exponential backoff and bounded jitter:

    delay = min(max_delay, base_delay * backoff_multiplier ** attempt)
    delay *= uniform(1 - jitter, 1 + jitter)

Errors are classified by a predicate (``is_retryable_error`` by default).
The caller can cancel a pending backoff wait by setting the ``cancel_event``
passed to ``call()``; that surfaces as RetryCancelled, never as another
attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

from stepwise.exceptions import (
    ModelError,
    NonRetryableError,
    RetryCancelled,
    RetryExhaustedError,
)
from stepwise.execution import Message
from stepwise.model import ModelAdaptor


DEFAULT_CALL_TIMEOUT = 120.0

NON_RETRYABLE_TYPES = frozenset(
    {"invalid_request", "authentication_error", "permission_error", "quota_exceeded"}
)
NON_RETRYABLE_PHRASES = ("invalid api key", "authentication failed", "permission denied")

RetryPredicate = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the computed delay

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate.

    Request, credential, permission and quota problems will fail the same
    way again; everything else (rate limits, network faults, timeouts,
    unclassified errors) is worth another attempt.
    """
    if isinstance(error, ModelError) and error.type in NON_RETRYABLE_TYPES:
        return False
    message = str(error).lower()
    return not any(phrase in message for phrase in NON_RETRYABLE_PHRASES)


def compute_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Backoff before retry number ``attempt + 1`` (attempt counts from 0)."""
    rng = rng or random
    delay = min(config.max_delay, config.base_delay * config.backoff_multiplier**attempt)
    if config.jitter:
        delay *= rng.uniform(1 - config.jitter, 1 + config.jitter)
    return delay


class RetryingModel(ModelAdaptor):
    """ModelAdaptor decorator adding bounded retries.

    Args:
        model: The adaptor to wrap.
        config: Retry limits and backoff shape (default: RetryConfig()).
        retry_if: Predicate deciding whether an error is retryable.
        before_retry: Called as ``(attempt, error, delay)`` before waiting.
        after_retry: Called as ``(attempt, error, delay)`` after waiting.
        timeout: Per-attempt timeout in seconds; None disables it. A timed
            out attempt counts as a ``transient_network`` ModelError.
        logger: Logger for retry notices (default: this module's logger).
        rng: Random source for jitter, mainly for tests.
    """

    def __init__(
        self,
        model: ModelAdaptor,
        config: Optional[RetryConfig] = None,
        retry_if: Optional[RetryPredicate] = None,
        before_retry: Optional[RetryCallback] = None,
        after_retry: Optional[RetryCallback] = None,
        timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
        logger: Optional[logging.Logger] = None,
        rng: Optional[random.Random] = None,
    ):
        self.inner = model
        self.config = config or RetryConfig()
        self.retry_if = retry_if or is_retryable_error
        self.before_retry = before_retry
        self.after_retry = after_retry
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.rng = rng

    @property
    def provider(self) -> str:
        return self.inner.provider

    @property
    def model(self) -> str:
        return self.inner.model

    async def call(
        self,
        messages: list[Message],
        tools: list,
        settings=None,
        **kwargs,
    ) -> Message:
        cancel_event: Optional[asyncio.Event] = kwargs.get("cancel_event")
        attempt = 0

        while True:
            try:
                return await self._attempt(messages, tools, settings, **kwargs)
            except Exception as e:
                if not self.retry_if(e):
                    raise NonRetryableError(
                        f"non-retryable error: {e}", last_error=e, attempts=attempt + 1
                    ) from e

                if attempt >= self.config.max_retries:
                    raise RetryExhaustedError(
                        f"max retries exceeded after {attempt + 1} attempts, last error: {e}",
                        last_error=e,
                        attempts=attempt + 1,
                    ) from e

                delay = compute_delay(attempt, self.config, self.rng)
                self.logger.warning(
                    f"Retrying {self.provider or 'model'} call in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.config.max_retries + 1}): {e}"
                )
                self._notify(self.before_retry, attempt + 1, e, delay)

                if await self._wait(delay, cancel_event):
                    raise RetryCancelled(
                        f"cancelled while waiting to retry: {e}",
                        last_error=e,
                        attempts=attempt + 1,
                    ) from e

                self._notify(self.after_retry, attempt + 1, e, delay)
                attempt += 1

    async def _attempt(self, messages, tools, settings, **kwargs) -> Message:
        coro = self.inner.call(messages, tools, settings, **kwargs)
        if self.timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ModelError(
                "transient_network",
                f"{self.provider or 'model'} call timed out after {self.timeout}s",
            ) from e

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay``. Returns True if cancelled instead."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _notify(self, callback: Optional[RetryCallback], attempt: int, error: BaseException, delay: float) -> None:
        if callback is None:
            return
        try:
            callback(attempt, error, delay)
        except Exception as e:
            # Observers must not change retry behaviour
            self.logger.warning(f"Retry callback raised exception: {e}")
