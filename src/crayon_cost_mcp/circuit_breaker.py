"""
Circuit breaker guarding calls to the upstream Crayon API.

States:
- closed: calls pass through, outcomes are counted in a rolling window
- open: calls fail fast with ServiceUnavailableError, upstream is not contacted
- half-open: after the reset timeout, a single probe call is let through;
  success closes the circuit, failure re-opens it

Every call runs under its own timeout; a timeout counts as a failure.
One breaker instance exists per upstream dependency and is shared by all callers.
All state changes happen synchronously between awaits, so the breaker is safe
to share between tasks on one event loop.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, TypeVar

from .audit import log
from .errors import ServiceUnavailableError

T = TypeVar("T")


class CircuitState(StrEnum):
    """Circuit breaker states"""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class _RollingWindow:
    """Success/failure counts over the last `window_seconds`, kept in fixed buckets."""

    def __init__(self, window_seconds: float, buckets: int):
        self.bucket_seconds = window_seconds / buckets
        self.buckets = buckets
        # bucket index -> [successes, failures]
        self._counts: dict[int, list[int]] = {}

    def _bucket(self, now: float) -> list[int]:
        index = int(now // self.bucket_seconds)
        stale = [i for i in self._counts if i <= index - self.buckets]
        for i in stale:
            del self._counts[i]
        return self._counts.setdefault(index, [0, 0])

    def record(self, now: float, success: bool) -> None:
        self._bucket(now)[0 if success else 1] += 1

    def totals(self, now: float) -> tuple[int, int]:
        self._bucket(now)
        successes = sum(c[0] for c in self._counts.values())
        failures = sum(c[1] for c in self._counts.values())
        return successes, failures

    def clear(self) -> None:
        self._counts.clear()


class CircuitBreaker:
    """
    Rolling-window circuit breaker with per-call timeout.

    Args:
        name: Dependency name used in log events
        timeout: Per-call timeout in seconds
        error_threshold_percentage: Error rate (percent) at which the circuit opens
        reset_timeout: Seconds to stay open before allowing a half-open probe
        volume_threshold: Minimum calls in the window before the circuit may open
        rolling_window: Length of the rolling statistics window in seconds
        rolling_buckets: Number of buckets the window is split into
        error_filter: Returns True for exceptions that must not count as failures
                      (e.g. upstream 4xx responses)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        name: str,
        timeout: float = 30.0,
        error_threshold_percentage: float = 50,
        reset_timeout: float = 30.0,
        volume_threshold: int = 10,
        rolling_window: float = 10.0,
        rolling_buckets: int = 10,
        error_filter: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.volume_threshold = volume_threshold
        self.error_filter = error_filter
        self._clock = clock

        self._window = _RollingWindow(rolling_window, rolling_buckets)
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._probe_in_flight = False

        self._stats = {
            "fires": 0,
            "successes": 0,
            "failures": 0,
            "rejects": 0,
            "timeouts": 0,
            "fallbacks": 0,
        }

    @property
    def state(self) -> CircuitState:
        return self._state

    def status(self) -> dict[str, Any]:
        """Current state plus lifetime counters."""
        successes, failures = self._window.totals(self._clock())
        return {
            "name": self.name,
            "state": self._state.value,
            "window": {"successes": successes, "failures": failures},
            **self._stats,
        }

    async def execute(
        self, operation: Callable[[], Awaitable[T]], fallback: T | None = None
    ) -> T:
        """
        Run `operation` under the breaker.

        Args:
            operation: Zero-argument coroutine factory performing the upstream call
            fallback: Value returned instead of raising when the call fails

        Returns:
            The operation's result, or `fallback` on failure

        Raises:
            ServiceUnavailableError: Circuit open or call timed out (no fallback)
            Exception: The operation's own error when no fallback is given
        """
        try:
            return await self._call(operation)
        except Exception as e:
            log.error(
                "upstream_call_failed",
                breaker=self.name,
                error=str(e),
                error_type=type(e).__name__,
                circuit_state=self._state.value,
            )
            if fallback is not None:
                self._stats["fallbacks"] += 1
                log.warning("circuit_fallback", breaker=self.name, degraded=True)
                return fallback
            raise

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        probe = self._admit()
        self._stats["fires"] += 1

        try:
            async with asyncio.timeout(self.timeout):
                result = await operation()
        except TimeoutError as e:
            self._stats["timeouts"] += 1
            self._on_failure(probe)
            raise ServiceUnavailableError(
                f"Upstream call timeout after {self.timeout:g}s ({self.name})", reason="timeout"
            ) from e
        except asyncio.CancelledError:
            # Caller went away: the outcome is unknown, record nothing.
            if probe:
                self._probe_in_flight = False
            raise
        except Exception as e:
            if self.error_filter is not None and self.error_filter(e):
                self._on_success(probe)
            else:
                self._on_failure(probe)
            raise

        self._on_success(probe)
        return result

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True if it is the half-open probe."""
        if self._state is CircuitState.OPEN:
            if self._clock() - self._opened_at >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
            else:
                self._stats["rejects"] += 1
                raise ServiceUnavailableError(
                    f"Circuit breaker is open for {self.name}", reason="circuit_open"
                )

        if self._state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self._stats["rejects"] += 1
                raise ServiceUnavailableError(
                    f"Circuit breaker is half-open for {self.name}, probe in progress",
                    reason="circuit_open",
                )
            self._probe_in_flight = True
            return True

        return False

    def _on_success(self, probe: bool) -> None:
        self._stats["successes"] += 1
        if probe:
            self._probe_in_flight = False
            self._window.clear()
            self._transition(CircuitState.CLOSED)
            return
        self._window.record(self._clock(), success=True)

    def _on_failure(self, probe: bool) -> None:
        self._stats["failures"] += 1
        now = self._clock()
        if probe:
            self._probe_in_flight = False
            self._open(now)
            return

        self._window.record(now, success=False)
        if self._state is not CircuitState.CLOSED:
            return

        successes, failures = self._window.totals(now)
        total = successes + failures
        if total < self.volume_threshold:
            return
        if failures / total * 100 >= self.error_threshold_percentage:
            self._open(now)

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        self._state = new_state
        if new_state is CircuitState.OPEN:
            log.error("circuit_opened", breaker=self.name, reset_timeout=self.reset_timeout)
        elif new_state is CircuitState.HALF_OPEN:
            log.warning("circuit_half_open", breaker=self.name)
        else:
            log.info("circuit_closed", breaker=self.name)
