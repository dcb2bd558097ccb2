from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

from crm_automation.infra.metrics import metrics

logger = logging.getLogger("crm_automation.circuit")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, reason: str = "open") -> None:
        super().__init__(f"circuit_{reason}:{name}")
        self.name = name
        self.reason = reason


class CircuitBreaker(Generic[T]):
    """Sliding-window breaker guarding calls to an unreliable provider.

    ``failure_threshold`` failures inside ``window_seconds`` open the circuit.
    Once ``recovery_time`` has passed, up to ``half_open_max_calls`` trial calls
    go through; a trial success closes the circuit and a trial failure opens it
    again. A call running past its timeout counts as a failure and the
    ``asyncio.TimeoutError`` propagates to the caller. Cancellation from an
    enclosing deadline is recorded as a failure too. State changes never await.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = timeout_seconds
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._failure_times: deque[float] = deque()
        self._trial_calls = 0
        metrics.record_circuit_state(name, self._state.value)

    @property
    def state(self) -> str:
        return self._state.value

    async def call(
        self,
        fn: Callable[..., T | Awaitable[T]],
        *args,
        timeout_seconds: float | None = None,
        **kwargs,
    ) -> T:
        self._admit()
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        try:
            outcome = fn(*args, **kwargs)
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=max(0.01, timeout)) if timeout else await outcome
        except asyncio.CancelledError:
            # an outer deadline cancelled the call; count it and free the trial slot
            self._record_failure()
            raise
        except Exception as exc:
            self._record_failure()
            logger.warning(
                "circuit_call_failed",
                extra={"extra": {"name": self.name, "state": self.state, "error": type(exc).__name__}},
            )
            raise
        self._record_success()
        return outcome

    def reset(self) -> None:
        self._failure_times.clear()
        self._move_to(CircuitState.CLOSED)

    def _admit(self) -> None:
        if self._state is CircuitState.OPEN:
            if time.monotonic() - self._opened_at < self.recovery_time:
                raise CircuitBreakerOpenError(self.name)
            self._move_to(CircuitState.HALF_OPEN)
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_calls >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(self.name, "half_open_limit")
            self._trial_calls += 1

    def _record_failure(self) -> None:
        now = time.monotonic()
        self._failure_times.append(now)
        horizon = now - self.window_seconds
        while self._failure_times and self._failure_times[0] < horizon:
            self._failure_times.popleft()
        trial_failed = self._state is CircuitState.HALF_OPEN
        if trial_failed or len(self._failure_times) >= self.failure_threshold:
            self._opened_at = now
            self._move_to(CircuitState.OPEN)
            logger.warning("circuit_opened", extra={"extra": {"name": self.name}})

    def _record_success(self) -> None:
        self._failure_times.clear()
        if self._state is not CircuitState.CLOSED:
            logger.info("circuit_closed", extra={"extra": {"name": self.name}})
            self._move_to(CircuitState.CLOSED)

    def _move_to(self, state: CircuitState) -> None:
        self._state = state
        self._trial_calls = 0
        metrics.record_circuit_state(self.name, state.value)
