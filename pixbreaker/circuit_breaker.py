"""A thread-safe circuit breaker guarding calls to an unstable dependency."""

from __future__ import annotations

import threading
import time
from enum import IntEnum
from typing import Callable, TypeVar

T = TypeVar("T")


class CircuitState(IntEnum):
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitOpenError(Exception):
    """Raised when the breaker refuses a call without running it."""


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures and probes again once
    ``reset_timeout`` seconds have passed since the last failure."""

    def __init__(
        self,
        threshold: int,
        reset_timeout: float,
        *,
        half_open_max: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure = 0.0
        self._threshold = threshold
        self._reset_timeout = reset_timeout
        self._half_open_max = half_open_max
        self._half_open_count = 0
        self._clock = clock

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def execute(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` through the breaker, re-raising whatever it raises."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._clock() - self._last_failure > self._reset_timeout:
                    self._state = CircuitState.HALF_OPEN
                    self._half_open_count = 0
                else:
                    raise CircuitOpenError("circuit breaker open")
            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_count >= self._half_open_max:
                    raise CircuitOpenError("circuit breaker half-open limit reached")
                self._half_open_count += 1

        try:
            result = fn()
        except Exception:
            with self._lock:
                self._failure_count += 1
                self._last_failure = self._clock()
                if self._failure_count >= self._threshold:
                    self._state = CircuitState.OPEN
            raise

        with self._lock:
            self._failure_count = 0
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
        return result