"""Tests for infrastructure/circuit_breaker.py.

Covers:
- State machine transitions: CLOSED → OPEN → HALF-OPEN → CLOSED
- Rolling-window error percentage and volume threshold
- CircuitOpenError raised and rejected_calls counter
- Single probe in HALF-OPEN
- Per-call timeout counted as failure
- Listener notifications (and listener errors swallowed)
- Fallback strategy, reset(), status() and the registry
"""

from __future__ import annotations

import asyncio

import pytest

from infrastructure.circuit_breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingListener:
    def __init__(self) -> None:
        self.transitions: list[tuple[str, str, str]] = []
        self.outcomes: list[tuple[str, str]] = []

    def on_state_change(self, name: str, old_state: str, new_state: str) -> None:
        self.transitions.append((name, old_state, new_state))

    def on_outcome(self, name: str, outcome: str, latency_seconds: float) -> None:
        self.outcomes.append((name, outcome))


class BrokenListener:
    def on_state_change(self, name: str, old_state: str, new_state: str) -> None:
        raise RuntimeError("listener bug")

    def on_outcome(self, name: str, outcome: str, latency_seconds: float) -> None:
        raise RuntimeError("listener bug")


def _make_breaker(clock: FakeClock | None = None, **kwargs) -> CircuitBreaker:
    defaults = {
        "name": "test",
        "timeout_seconds": 1.0,
        "error_threshold_percentage": 50.0,
        "reset_timeout_seconds": 30.0,
        "clock": clock or FakeClock(),
    }
    defaults.update(kwargs)
    return CircuitBreaker(**defaults)


async def _succeed() -> str:
    return "ok"


async def _fail() -> str:
    raise RuntimeError("simulated failure")


async def _trigger_failures(breaker: CircuitBreaker, n: int) -> None:
    for _ in range(n):
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)


# ---------------------------------------------------------------------------
# Initial state
# ---------------------------------------------------------------------------


class TestInitialState:
    def test_starts_closed(self) -> None:
        b = _make_breaker()
        assert b.state == CircuitState.CLOSED
        assert b.is_open is False

    def test_stats_zero_on_init(self) -> None:
        s = _make_breaker().stats
        assert (s.total_calls, s.successful_calls, s.failed_calls, s.rejected_calls) == (0, 0, 0, 0)

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError):
            _make_breaker(error_threshold_percentage=150)


# ---------------------------------------------------------------------------
# Tripping
# ---------------------------------------------------------------------------


class TestTripping:
    @pytest.mark.asyncio
    async def test_success_passes_through(self) -> None:
        b = _make_breaker()
        assert await b.call(_succeed) == "ok"
        assert b.stats.successful_calls == 1

    @pytest.mark.asyncio
    async def test_first_failure_trips_at_default_volume(self) -> None:
        b = _make_breaker()
        await _trigger_failures(b, 1)
        assert b.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_error_rate_at_threshold_does_not_trip(self) -> None:
        b = _make_breaker()
        await b.call(_succeed)
        await _trigger_failures(b, 1)
        # 1 of 2 = 50%, threshold requires strictly more
        assert b.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_error_rate_above_threshold_trips(self) -> None:
        b = _make_breaker()
        await b.call(_succeed)
        await _trigger_failures(b, 2)
        assert b.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_volume_threshold(self) -> None:
        b = _make_breaker(volume_threshold=3)
        await _trigger_failures(b, 2)
        assert b.state == CircuitState.CLOSED
        await _trigger_failures(b, 1)
        assert b.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_old_outcomes_leave_the_window(self) -> None:
        clock = FakeClock()
        b = _make_breaker(clock, rolling_window_seconds=10.0)
        for _ in range(3):
            await b.call(_succeed)
        clock.advance(20.0)
        await _trigger_failures(b, 1)
        # earlier successes expired, so the window is 1 failure of 1
        assert b.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_untracked_exception_is_not_a_failure(self) -> None:
        b = _make_breaker(exceptions=(ConnectionError,))
        with pytest.raises(RuntimeError):
            await b.call(_fail)
        assert b.state == CircuitState.CLOSED
        assert b.stats.failed_calls == 0


# ---------------------------------------------------------------------------
# OPEN state
# ---------------------------------------------------------------------------


class TestOpenState:
    @pytest.mark.asyncio
    async def test_rejects_without_calling(self) -> None:
        b = _make_breaker()
        await _trigger_failures(b, 1)
        called = False

        async def _spy() -> str:
            nonlocal called
            called = True
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await b.call(_spy)
        assert called is False
        assert exc_info.value.name == "test"
        assert b.stats.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_reset_in_seconds_reported(self) -> None:
        clock = FakeClock()
        b = _make_breaker(clock)
        await _trigger_failures(b, 1)
        clock.advance(10.0)
        with pytest.raises(CircuitOpenError) as exc_info:
            await b.call(_succeed)
        assert exc_info.value.reset_in_seconds == pytest.approx(20.0)


# ---------------------------------------------------------------------------
# HALF-OPEN recovery
# ---------------------------------------------------------------------------


class TestHalfOpen:
    @pytest.mark.asyncio
    async def test_probe_success_closes(self) -> None:
        clock = FakeClock()
        b = _make_breaker(clock)
        await _trigger_failures(b, 1)
        clock.advance(30.0)
        assert await b.call(_succeed) == "ok"
        assert b.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_probe_failure_reopens(self) -> None:
        clock = FakeClock()
        b = _make_breaker(clock)
        await _trigger_failures(b, 1)
        clock.advance(30.0)
        await _trigger_failures(b, 1)
        assert b.state == CircuitState.OPEN
        # the reset timer restarted from the failed probe
        clock.advance(29.0)
        with pytest.raises(CircuitOpenError):
            await b.call(_succeed)

    @pytest.mark.asyncio
    async def test_single_probe_in_flight(self) -> None:
        clock = FakeClock()
        b = _make_breaker(clock)
        await _trigger_failures(b, 1)
        clock.advance(30.0)

        release = asyncio.Event()

        async def _slow() -> str:
            await release.wait()
            return "ok"

        probe = asyncio.create_task(b.call(_slow))
        await asyncio.sleep(0)
        assert b.state == CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            await b.call(_succeed)
        release.set()
        assert await probe == "ok"
        assert b.state == CircuitState.CLOSED


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TestTimeout:
    @pytest.mark.asyncio
    async def test_slow_call_times_out_and_counts(self) -> None:
        listener = RecordingListener()
        b = _make_breaker(timeout_seconds=0.01, listeners=[listener])

        async def _hang() -> str:
            await asyncio.sleep(1.0)
            return "late"

        with pytest.raises(TimeoutError):
            await b.call(_hang)
        assert b.stats.timeouts == 1
        assert ("test", "timeout") in listener.outcomes
        assert b.state == CircuitState.OPEN


# ---------------------------------------------------------------------------
# Listeners
# ---------------------------------------------------------------------------


class TestListeners:
    @pytest.mark.asyncio
    async def test_transitions_and_outcomes_reported(self) -> None:
        clock = FakeClock()
        listener = RecordingListener()
        b = _make_breaker(clock, listeners=[listener])
        await _trigger_failures(b, 1)
        with pytest.raises(CircuitOpenError):
            await b.call(_succeed)
        clock.advance(30.0)
        await b.call(_succeed)

        assert listener.transitions == [
            ("test", "closed", "open"),
            ("test", "open", "half_open"),
            ("test", "half_open", "closed"),
        ]
        assert [o for _, o in listener.outcomes] == ["failure", "rejected", "success"]

    @pytest.mark.asyncio
    async def test_listener_errors_are_swallowed(self) -> None:
        b = _make_breaker(listeners=[BrokenListener()])
        await _trigger_failures(b, 1)
        assert b.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_add_listener(self) -> None:
        b = _make_breaker()
        listener = RecordingListener()
        b.add_listener(listener)
        await b.call(_succeed)
        assert listener.outcomes == [("test", "success")]


# ---------------------------------------------------------------------------
# Fallback, reset, status
# ---------------------------------------------------------------------------


class TestFallbackAndReset:
    @pytest.mark.asyncio
    async def test_run_fallback_receives_call_arguments(self) -> None:
        async def _fallback(image_url: str) -> dict:
            return {"fallback": True, "url": image_url}

        b = _make_breaker(fallback=_fallback)
        assert b.has_fallback is True
        assert await b.run_fallback("u") == {"fallback": True, "url": "u"}

    @pytest.mark.asyncio
    async def test_run_fallback_without_strategy(self) -> None:
        b = _make_breaker()
        assert b.has_fallback is False
        with pytest.raises(RuntimeError):
            await b.run_fallback()

    @pytest.mark.asyncio
    async def test_reset_forces_closed(self) -> None:
        b = _make_breaker()
        await _trigger_failures(b, 1)
        b.reset()
        assert b.state == CircuitState.CLOSED
        assert await b.call(_succeed) == "ok"

    @pytest.mark.asyncio
    async def test_status_snapshot(self) -> None:
        b = _make_breaker()
        await b.call(_succeed)
        status = b.status()
        assert status["name"] == "test"
        assert status["state"] == "closed"
        assert status["window_calls"] == 1
        assert status["stats"]["success"] == 1


class TestRegistry:
    def test_register_and_get(self) -> None:
        acne = _make_breaker(name="acne")
        registry = BreakerRegistry([acne])
        assert registry.get("acne") is acne
        assert "acne" in registry
        assert "wrinkles" not in registry

    def test_duplicate_names_rejected(self) -> None:
        registry = BreakerRegistry([_make_breaker(name="acne")])
        with pytest.raises(ValueError):
            registry.register(_make_breaker(name="acne"))

    def test_missing_breaker(self) -> None:
        with pytest.raises(KeyError):
            BreakerRegistry().get("acne")

    def test_status_lists_every_breaker(self) -> None:
        registry = BreakerRegistry([_make_breaker(name="acne"), _make_breaker(name="wrinkles")])
        assert [s["name"] for s in registry.status()] == ["acne", "wrinkles"]
