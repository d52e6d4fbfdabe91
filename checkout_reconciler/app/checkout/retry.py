"""Bounded retries with a linear, capped backoff."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY_MS = 1500
MAX_DELAY_MS = 7500
DEFAULT_MAX_ATTEMPTS = 3

SleepFn = Callable[[float], Awaitable[Any]]


def delay_for_attempt(attempt_number: int, *, base_ms: int = BASE_DELAY_MS, cap_ms: int = MAX_DELAY_MS) -> int:
    """Milliseconds to wait before ``attempt_number``; the first attempt never waits."""

    if attempt_number < 1:
        raise ValueError("attempt_number must be >= 1")
    if attempt_number == 1:
        return 0
    return min(attempt_number * base_ms, cap_ms)


@dataclass(frozen=True)
class RetryAttempt:
    attempt_number: int
    max_attempts: int
    base_delay_ms: int = BASE_DELAY_MS
    cap_ms: int = MAX_DELAY_MS

    @property
    def delay_ms(self) -> int:
        return delay_for_attempt(self.attempt_number, base_ms=self.base_delay_ms, cap_ms=self.cap_ms)


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Last value or error observed, with the number of attempts spent."""

    value: Optional[T]
    error: Optional[BaseException]
    attempts: int
    succeeded: bool


class RetryController:
    """Runs an async operation until it succeeds or attempts run out.

    An attempt fails when the operation raises :class:`Exception` or when
    ``is_success`` rejects its return value. ``should_retry`` receives the
    failed value (or the raised error) and can stop the loop early.
    """

    def __init__(
        self,
        *,
        base_delay_ms: int = BASE_DELAY_MS,
        cap_ms: int = MAX_DELAY_MS,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        if base_delay_ms < 0 or cap_ms < 0:
            raise ValueError("delays must be >= 0")
        self.base_delay_ms = base_delay_ms
        self.cap_ms = cap_ms
        self._sleep: SleepFn = sleep or asyncio.sleep

    def delay_for_attempt(self, attempt_number: int) -> int:
        return delay_for_attempt(attempt_number, base_ms=self.base_delay_ms, cap_ms=self.cap_ms)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        is_success: Callable[[T], bool] = bool,
        should_retry: Optional[Callable[[Any], bool]] = None,
        label: str = "operation",
    ) -> RetryResult[T]:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        value: Optional[T] = None
        error: Optional[BaseException] = None
        for attempt_number in range(1, max_attempts + 1):
            attempt = RetryAttempt(attempt_number, max_attempts, self.base_delay_ms, self.cap_ms)
            if attempt.delay_ms:
                logger.info(
                    "Waiting %sms before %s attempt %s/%s",
                    attempt.delay_ms,
                    label,
                    attempt_number,
                    max_attempts,
                )
                await self._sleep(attempt.delay_ms / 1000)

            try:
                value = await operation()
                error = None
            except Exception as exc:
                value, error = None, exc
                logger.warning(
                    "%s attempt %s/%s raised %s",
                    label,
                    attempt_number,
                    max_attempts,
                    exc,
                    extra={"attempt": attempt_number},
                )
                failure: Any = exc
            else:
                if is_success(value):
                    return RetryResult(value=value, error=None, attempts=attempt_number, succeeded=True)
                failure = value

            if should_retry is not None and not should_retry(failure):
                return RetryResult(value=value, error=error, attempts=attempt_number, succeeded=False)

        return RetryResult(value=value, error=error, attempts=max_attempts, succeeded=False)


__all__ = [
    "BASE_DELAY_MS",
    "DEFAULT_MAX_ATTEMPTS",
    "MAX_DELAY_MS",
    "RetryAttempt",
    "RetryController",
    "RetryResult",
    "delay_for_attempt",
]
