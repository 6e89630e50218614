"""Retry wrapper with pure exponential backoff for every outbound vendor call.

BackoffExecutor.execute() runs an async operation up to ``max_attempts``
times. Between failed attempts it sleeps ``initial_delay * 2 ** (attempt - 1)``
seconds (no jitter, no cap). The result is returned as a RetryOutcome rather
than raised, so callers can tell a ValidationError (never retried) apart from
an UpstreamError that already exhausted its retry budget.

Retry mechanics are delegated to tenacity, matching the retry pattern used by
the vendor clients.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.relay.core.monitoring import record_upstream_retry
from src.relay.sync.errors import ValidationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Typed result of a BackoffExecutor run: a value or the last error.

    ``error`` is the exact exception object raised by the final attempt,
    so its identity and traceback are preserved for re-raising. The run's
    label is attached to it as an exception note.
    """

    label: str
    attempts: int
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        """False when the failure is a ValidationError (never retried)."""
        return self.error is not None and not isinstance(self.error, ValidationError)

    def unwrap(self) -> T:
        """Return the value, or re-raise the original error untouched."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class BackoffExecutor:
    """Runs idempotent async operations with exponential backoff.

    Args:
        max_attempts: Default attempt ceiling (>= 1).
        initial_delay: Default delay in seconds before the first retry.
        sleep: Awaitable sleep used between attempts. Tests inject a fake
            to observe delays without waiting.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> BackoffExecutor:
        """Build an executor from MAX_RETRY_ATTEMPTS / RETRY_DELAY_MS."""
        return cls(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            initial_delay=settings.RETRY_DELAY_MS / 1000,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        initial_delay: float | None = None,
        label: str = "operation",
    ) -> RetryOutcome[T]:
        """Call ``operation`` until it succeeds or the attempt budget is spent.

        Args:
            operation: Zero-argument coroutine factory. Must be safe to repeat.
            max_attempts: Override of the default attempt ceiling (>= 1).
            initial_delay: Override of the default first delay (seconds).
            label: Human-readable name used in logs and metrics.

        Returns:
            RetryOutcome with either ``value`` or the final ``error``.
        """
        attempts_allowed = self._max_attempts if max_attempts is None else max_attempts
        if attempts_allowed < 1:
            raise ValueError("max_attempts must be at least 1")
        delay = self._initial_delay if initial_delay is None else initial_delay
        invocations = 0

        async def _attempt() -> T:
            nonlocal invocations
            invocations += 1
            return await operation()

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            next_delay = retry_state.next_action.sleep if retry_state.next_action else 0
            record_upstream_retry(label)
            logger.warning(
                "backoff.retry_scheduled",
                label=label,
                attempt=retry_state.attempt_number,
                max_attempts=attempts_allowed,
                delay_ms=round(next_delay * 1000),
                error=str(error),
            )

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(attempts_allowed),
            wait=wait_exponential(multiplier=delay, exp_base=2, min=0),
            retry=retry_if_not_exception_type(ValidationError),
            before_sleep=_before_sleep,
            reraise=True,
        )

        try:
            value = await retrying(_attempt)
        except Exception as exc:
            exc.add_note(f"retry label: {label} (attempts: {invocations})")
            logger.error(
                "backoff.attempts_exhausted",
                label=label,
                attempts=invocations,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RetryOutcome(label=label, attempts=invocations, error=exc)

        return RetryOutcome(label=label, attempts=invocations, value=value)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "operation",
    ) -> T:
        """Shorthand for ``execute(...).unwrap()`` with default budget."""
        outcome = await self.execute(operation, label=label)
        return outcome.unwrap()
