"""
Tests for CircuitBreaker - state machine, rolling window, timeout and fallback.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from crayon_cost_mcp.circuit_breaker import CircuitBreaker, CircuitState
from crayon_cost_mcp.errors import ServiceUnavailableError, UpstreamError


def _client_error(error: BaseException) -> bool:
    return isinstance(error, UpstreamError) and error.is_client_error


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        "test-api",
        timeout=1.0,
        error_threshold_percentage=50,
        reset_timeout=30.0,
        volume_threshold=4,
        error_filter=_client_error,
        clock=clock,
    )


async def _fail():
    raise UpstreamError("Crayon API error 500", status_code=500)


async def _ok():
    return "ok"


async def _trip(breaker: CircuitBreaker, failures: int) -> None:
    for _ in range(failures):
        with pytest.raises(UpstreamError):
            await breaker.execute(_fail)


class TestClosedState:
    """Tests for counting outcomes while closed"""

    @pytest.mark.asyncio
    async def test_success_passes_through(self, breaker):
        assert await breaker.execute(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.status()["successes"] == 1

    @pytest.mark.asyncio
    async def test_stays_closed_below_volume_threshold(self, breaker):
        await _trip(breaker, 3)
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_stays_closed_below_error_rate(self, breaker):
        for _ in range(3):
            await breaker.execute(_ok)
        await _trip(breaker, 1)
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count_as_failures(self, breaker):
        async def not_found():
            raise UpstreamError("Crayon API error 404", status_code=404)

        for _ in range(10):
            with pytest.raises(UpstreamError):
                await breaker.execute(not_found)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.status()["window"] == {"successes": 10, "failures": 0}

    @pytest.mark.asyncio
    async def test_old_failures_leave_the_rolling_window(self, breaker, clock):
        await _trip(breaker, 3)
        clock.advance(11)
        await _trip(breaker, 1)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.status()["window"]["failures"] == 1


class TestOpenState:
    """Tests for fail-fast behavior while open"""

    @pytest.mark.asyncio
    async def test_opens_when_threshold_reached(self, breaker):
        with capture_logs() as logs:
            await _trip(breaker, 4)

        assert breaker.state is CircuitState.OPEN
        assert any(entry["event"] == "circuit_opened" for entry in logs)

    @pytest.mark.asyncio
    async def test_open_circuit_does_not_call_upstream(self, breaker):
        await _trip(breaker, 4)
        operation = AsyncMock(return_value="ok")

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await breaker.execute(operation)

        assert exc_info.value.reason == "circuit_open"
        operation.assert_not_called()
        assert breaker.status()["rejects"] == 1

    @pytest.mark.asyncio
    async def test_still_open_before_reset_timeout(self, breaker, clock):
        await _trip(breaker, 4)
        clock.advance(29)

        with pytest.raises(ServiceUnavailableError):
            await breaker.execute(_ok)
        assert breaker.state is CircuitState.OPEN


class TestHalfOpenState:
    """Tests for the single probe after the reset timeout"""

    @pytest.mark.asyncio
    async def test_exactly_one_probe_allowed(self, breaker, clock):
        await _trip(breaker, 4)
        clock.advance(30)

        release = asyncio.Event()
        calls = 0

        async def slow_probe():
            nonlocal calls
            calls += 1
            await release.wait()
            return "probe"

        probe = asyncio.create_task(breaker.execute(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        with pytest.raises(ServiceUnavailableError):
            await breaker.execute(slow_probe)

        release.set()
        assert await probe == "probe"
        assert calls == 1
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_probe_reopens(self, breaker, clock):
        await _trip(breaker, 4)
        clock.advance(30)

        await _trip(breaker, 1)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(ServiceUnavailableError):
            await breaker.execute(_ok)

    @pytest.mark.asyncio
    async def test_successful_probe_resets_window(self, breaker, clock):
        await _trip(breaker, 4)
        clock.advance(30)

        await breaker.execute(_ok)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.status()["window"] == {"successes": 0, "failures": 0}


class TestTimeoutAndFallback:
    """Tests for per-call timeout, fallback and cancellation"""

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, clock):
        breaker = CircuitBreaker("slow-api", timeout=0.01, volume_threshold=1, clock=clock)

        async def hang():
            await asyncio.sleep(5)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await breaker.execute(hang)

        assert exc_info.value.reason == "timeout"
        assert breaker.status()["timeouts"] == 1
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_fallback_returned_and_logged(self, breaker):
        with capture_logs() as logs:
            result = await breaker.execute(_fail, fallback={"Items": []})

        assert result == {"Items": []}
        assert breaker.status()["fallbacks"] == 1
        fallback_events = [e for e in logs if e["event"] == "circuit_fallback"]
        assert fallback_events and fallback_events[0]["degraded"] is True

    @pytest.mark.asyncio
    async def test_error_reraised_without_fallback(self, breaker):
        with pytest.raises(UpstreamError) as exc_info:
            await breaker.execute(_fail)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_cancellation_records_nothing(self, breaker):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(5)

        task = asyncio.create_task(breaker.execute(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.status()["window"] == {"successes": 0, "failures": 0}
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_half_open_slot(self, breaker, clock):
        await _trip(breaker, 4)
        clock.advance(30)
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(5)

        task = asyncio.create_task(breaker.execute(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await breaker.execute(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED
