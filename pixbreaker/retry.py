"""Error classification and exponential-backoff retries with a shared budget."""

from __future__ import annotations

import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


class RetryClass(str, Enum):
    TRANSIENT = "transient"
    OVERLOAD = "overload"
    SERIALIZATION = "serialization"
    PSP_UNSTABLE = "psp_unstable"
    NETWORK = "network"
    PERMANENT = "permanent"


class RetryError(Exception):
    """Raised when an operation is given up on; ``last_error`` holds the cause."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


def contains_any(text: str, *args: str) -> bool:
    """Whether any of the given substrings occurs in ``text``."""
    return any(sub in text for sub in args)


_RULES = (
    (RetryClass.SERIALIZATION, ("serialization", "could not serialize", "deadlock")),
    (
        RetryClass.OVERLOAD,
        ("rate limit", "too many requests", "429", "503", "Service Unavailable"),
    ),
    (
        RetryClass.NETWORK,
        ("timeout", "connection refused", "connection reset", "EOF", "broken pipe"),
    ),
    (RetryClass.PSP_UNSTABLE, ("magicpay error 5", "PSP", "provider")),
    (
        RetryClass.PERMANENT,
        ("invalid", "validation", "not found", "400", "401", "403", "404"),
    ),
)


def classify_error(err: Optional[BaseException]) -> Optional[RetryClass]:
    """Classify an error by its message; ``None`` for no error."""
    if err is None:
        return None
    text = str(err)
    for retry_class, needles in _RULES:
        if contains_any(text, *needles):
            return retry_class
    return RetryClass.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings; delays are in seconds."""

    base_delay: float = 0.1
    max_delay: float = 30.0
    max_attempts: int = 5
    jitter_factor: float = 0.25


def default_retry_config() -> RetryConfig:
    return RetryConfig()


class RetryBudget:
    """Allows at most ``max_retries`` retries within a sliding ``window`` of seconds."""

    def __init__(
        self,
        window: float,
        max_retries: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._window = window
        self._max_retries = max_retries
        self._clock = clock
        self._stamps: deque[float] = deque()

    def allow(self) -> bool:
        with self._lock:
            now = self._clock()
            cutoff = now - self._window
            while self._stamps and not self._stamps[0] > cutoff:
                self._stamps.popleft()
            if len(self._stamps) >= self._max_retries:
                return False
            self._stamps.append(now)
            return True


_GLOBAL_RETRY_BUDGET = RetryBudget(60.0, 100)


def retry_with_backoff(config: RetryConfig, operation: Callable[[], T]) -> T:
    """Run ``operation`` until it succeeds, backing off between attempts.

    Permanent errors stop at once; overload errors add a pause of half the
    maximum delay. Raises :class:`RetryError` when giving up.
    """
    last_error: Optional[Exception] = None
    for attempt in range(config.max_attempts):
        if attempt > 0:
            if not _GLOBAL_RETRY_BUDGET.allow():
                raise RetryError(
                    f"retry budget exhausted after {attempt} attempts: {last_error}",
                    last_error,
                ) from last_error
            delay = min(config.base_delay * 2 ** (attempt - 1), config.max_delay)
            delay += delay * config.jitter_factor * random.uniform(-1.0, 1.0)
            time.sleep(max(delay, 0.0))

        try:
            return operation()
        except Exception as exc:
            last_error = exc

        retry_class = classify_error(last_error)
        if retry_class is RetryClass.PERMANENT:
            raise RetryError(f"permanent error: {last_error}", last_error) from last_error
        if retry_class is RetryClass.OVERLOAD:
            time.sleep(config.max_delay / 2)

    raise RetryError(
        f"max retries ({config.max_attempts}) exceeded: {last_error}", last_error
    ) from last_error