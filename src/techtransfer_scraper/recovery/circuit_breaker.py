"""
Circuit Breaker Pattern Implementation for Job Execution

Wraps the orchestrator's per-job execution so that a systemic failure (broker
outage, engine pool exhaustion, an institution network down) fails fast for
the following jobs instead of stacking up timeouts. The breaker opens on the
failure percentage observed over a rolling time window and lets a single
trial call through once the reset timeout has elapsed.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, TypeVar

import structlog

from techtransfer_scraper.observability import gauge, increment

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, short-circuiting calls
    HALF_OPEN = "half_open"  # One trial call in flight

    @property
    def metric_value(self) -> int:
        return {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}[self]


@dataclass
class CircuitBreakerSettings:
    """Configuration for circuit breaker behavior."""

    error_threshold_percentage: float = 50.0
    rolling_window_seconds: float = 10.0
    minimum_calls: int = 5
    reset_timeout_seconds: float = 30.0
    call_timeout_seconds: Optional[float] = 120.0


class CircuitOpenError(Exception):
    """Raised instead of invoking the guarded call."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    """
    Rolling-window, percentage-based circuit breaker.

    CLOSED -> OPEN when, with at least ``minimum_calls`` outcomes in the
    window, the failure percentage exceeds the threshold. OPEN -> HALF_OPEN
    once ``reset_timeout_seconds`` have passed. HALF_OPEN admits exactly one
    trial call; its success closes the circuit, its failure reopens it.
    """

    def __init__(
        self,
        name: str = "default",
        settings: Optional[CircuitBreakerSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.settings = settings or CircuitBreakerSettings()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: Deque[Tuple[float, bool]] = deque()  # (timestamp, failed)
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._short_circuited = 0

        self._lock = asyncio.Lock()
        gauge("circuit_state", self._state.metric_value, {"name": self.name})

        logger.debug(
            "Circuit breaker initialized",
            name=name,
            threshold=self.settings.error_threshold_percentage,
            window=self.settings.rolling_window_seconds,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.info("Circuit breaker transition", name=self.name, old=self._state.value, new=new_state.value)
        self._state = new_state
        gauge("circuit_state", new_state.metric_value, {"name": self.name})

    def _prune(self, now: float) -> None:
        horizon = now - self.settings.rolling_window_seconds
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _failure_percentage(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for _, failed in self._window if failed)
        return failures * 100.0 / len(self._window)

    def retry_in(self) -> float:
        """Seconds until an open breaker will admit a trial call."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.settings.reset_timeout_seconds - self._clock())

    async def admit(self) -> bool:
        """
        Admit or reject a call; returns True when the call is the half-open trial.

        A caller that admits ahead of ``call`` passes the result as
        ``admitted`` or hands it back through ``abandon``.

        Raises:
            CircuitOpenError: the breaker is open or its trial is taken
        """
        async with self._lock:
            now = self._clock()
            if self._state is CircuitState.OPEN:
                if self._opened_at is not None and now - self._opened_at >= self.settings.reset_timeout_seconds:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    self._reject()
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self._reject()
                self._trial_in_flight = True
                return True
            return False

    def _reject(self) -> None:
        self._short_circuited += 1
        increment("circuit_short_circuits", labels={"name": self.name})
        raise CircuitOpenError(self.name, self.retry_in())

    async def _after_call(self, failed: bool, trial: bool) -> None:
        async with self._lock:
            now = self._clock()
            if trial:
                self._trial_in_flight = False
                if failed:
                    self._open(now)
                else:
                    self._window.clear()
                    self._transition(CircuitState.CLOSED)
                return

            if self._state is not CircuitState.CLOSED:
                # A call admitted before the breaker opened finished late
                return

            self._window.append((now, failed))
            self._prune(now)
            if (
                len(self._window) >= self.settings.minimum_calls
                and self._failure_percentage() > self.settings.error_threshold_percentage
            ):
                logger.warning(
                    "Circuit breaker opening",
                    name=self.name,
                    failure_percentage=round(self._failure_percentage(), 1),
                    calls=len(self._window),
                )
                self._open(now)

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._window.clear()
        self._transition(CircuitState.OPEN)

    async def abandon(self, trial: bool) -> None:
        """Give back an admission that will not be used."""
        if trial:
            async with self._lock:
                self._trial_in_flight = False

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        is_failure: Optional[Callable[[T], bool]] = None,
        *,
        admitted: Optional[bool] = None,
    ) -> T:
        """
        Run ``operation`` through the breaker.

        Args:
            operation: Zero-argument coroutine factory
            is_failure: Classifies a returned value as a failure; exceptions always count
            admitted: Result of an earlier ``admit``; admission is skipped when given

        Raises:
            CircuitOpenError: the breaker is open, ``operation`` was not invoked
        """
        trial = admitted if admitted is not None else await self.admit()
        try:
            if self.settings.call_timeout_seconds:
                async with asyncio.timeout(self.settings.call_timeout_seconds):
                    result = await operation()
            else:
                result = await operation()
        except asyncio.CancelledError:
            await self.abandon(trial)
            raise
        except Exception:
            await self._after_call(failed=True, trial=trial)
            raise

        failed = bool(is_failure(result)) if is_failure is not None else False
        await self._after_call(failed=failed, trial=trial)
        return result

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state for monitoring."""
        self._prune(self._clock())
        return {
            "name": self.name,
            "state": self._state.value,
            "calls_in_window": len(self._window),
            "failure_percentage": round(self._failure_percentage(), 1),
            "short_circuited": self._short_circuited,
            "retry_in": round(self.retry_in(), 3),
        }

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            logger.info("Circuit breaker manually reset", name=self.name)
            self._window.clear()
            self._opened_at = None
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    async def force_open(self) -> None:
        """Manually force the circuit breaker to open state."""
        async with self._lock:
            logger.warning("Circuit breaker manually forced open", name=self.name)
            self._open(self._clock())
