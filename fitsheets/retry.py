"""Bounded retry with linear backoff for calls against the backing spreadsheet."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

from fitsheets.errors import RemoteUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DELAY_SECONDS = 1.0

ErrorCallback = Callable[[Exception, int], None]


class RetryExecutor:
    """Run an operation up to ``max_attempts`` times, sleeping ``delay * attempt``.

    Only :class:`RemoteUnavailableError` is absorbed.  Any other exception
    propagates on the attempt that raised it.  When every attempt fails the
    executor logs the last error and returns ``None``, which callers must read
    as "could not determine" rather than as a destructive failure.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delay: float = DEFAULT_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.delay = max(0.0, delay)
        self._sleep = sleep
        self._is_retrying = False

    @property
    def is_retrying(self) -> bool:
        """Advisory flag for UI feedback; ``True`` while attempt 2+ is running."""

        return self._is_retrying

    def backoff(self, attempt: int, delay: Optional[float] = None) -> float:
        base = self.delay if delay is None else delay
        return base * attempt

    def retry(
        self,
        operation: Callable[[], T],
        *,
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Optional[T]:
        attempts = self.max_attempts if max_attempts is None else max(1, max_attempts)
        last_error: Optional[Exception] = None
        try:
            for attempt in range(1, attempts + 1):
                self._is_retrying = attempt > 1
                try:
                    return operation()
                except RemoteUnavailableError as exc:
                    last_error = exc
                    if on_error is not None:
                        on_error(exc, attempt)
                    if attempt < attempts:
                        wait = self.backoff(attempt, delay)
                        logger.info(
                            "Attempt %d/%d failed (%s). Retrying in %.1fs",
                            attempt,
                            attempts,
                            exc,
                            wait,
                        )
                        self._sleep(wait)
        finally:
            self._is_retrying = False

        logger.warning("Retry failed after %d attempts: %s", attempts, last_error)
        return None


@dataclass(frozen=True)
class AttemptBudget:
    """Immutable attempt counter threaded through repeated operations."""

    limit: int = DEFAULT_MAX_ATTEMPTS
    used: int = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def consume(self) -> "AttemptBudget":
        return replace(self, used=min(self.limit, self.used + 1))

    def reset(self) -> "AttemptBudget":
        return replace(self, used=0)


__all__ = ["AttemptBudget", "RetryExecutor", "DEFAULT_MAX_ATTEMPTS", "DEFAULT_DELAY_SECONDS"]
