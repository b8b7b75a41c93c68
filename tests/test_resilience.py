"""
Tests for circuit breakers, retries and error classification.
"""

import asyncio
import random

import pytest
import requests

from surveillance_src.errors import (
    CircuitOpenSkipped,
    SourceAuthFailure,
    SourceTimeout,
    SourceUnavailable,
    SourceValidationError,
)
from surveillance_src.models import CircuitState
from surveillance_src.resilience import (
    ResilienceManager,
    RetryPolicy,
    classify_error,
    classify_status,
)


def _trip(breakers, service_id="alpha", times=3):
    for _ in range(times):
        breakers.acquire(service_id)
        breakers.record_failure(service_id)


def _http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"HTTP {status}", response=response)


class TestCircuitBreakerRegistry:
    """Breaker state transitions."""

    def test_new_service_is_closed(self, breakers):
        assert breakers.state("alpha") == CircuitState.CLOSED
        breakers.acquire("alpha")

    def test_opens_at_threshold(self, breakers):
        _trip(breakers, times=2)
        assert breakers.state("alpha") == CircuitState.CLOSED

        _trip(breakers, times=1)
        assert breakers.state("alpha") == CircuitState.OPEN
        with pytest.raises(CircuitOpenSkipped) as exc_info:
            breakers.acquire("alpha")
        assert exc_info.value.source_id == "alpha"

    def test_failures_outside_window_are_forgotten(self, breakers, clock):
        _trip(breakers, times=2)
        clock.advance(61)
        _trip(breakers, times=1)
        assert breakers.state("alpha") == CircuitState.CLOSED
        assert breakers.snapshot()["alpha"].failure_count == 1

    def test_half_open_admits_single_trial(self, breakers, clock):
        _trip(breakers)
        clock.advance(30)

        breakers.acquire("alpha")
        assert breakers.state("alpha") == CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenSkipped):
            breakers.acquire("alpha")

    def test_successful_trial_closes(self, breakers, clock):
        _trip(breakers)
        clock.advance(30)
        breakers.acquire("alpha")
        breakers.record_success("alpha")

        assert breakers.state("alpha") == CircuitState.CLOSED
        record = breakers.snapshot()["alpha"]
        assert record.cool_down == 30
        assert record.failure_count == 0
        assert record.trial_in_flight is False

    def test_failed_trial_reopens_with_longer_cool_down(self, breakers, clock):
        _trip(breakers)
        clock.advance(30)
        breakers.acquire("alpha")
        breakers.record_failure("alpha")

        assert breakers.state("alpha") == CircuitState.OPEN
        assert breakers.snapshot()["alpha"].cool_down == 60

        clock.advance(30)
        with pytest.raises(CircuitOpenSkipped):
            breakers.acquire("alpha")
        clock.advance(30)
        breakers.acquire("alpha")
        assert breakers.state("alpha") == CircuitState.HALF_OPEN

    def test_cool_down_is_capped(self, breakers, clock):
        _trip(breakers)
        for _ in range(4):
            clock.advance(1000)
            breakers.acquire("alpha")
            breakers.record_failure("alpha")
        assert breakers.snapshot()["alpha"].cool_down == 100

    def test_breakers_are_independent(self, breakers):
        _trip(breakers, "alpha")
        breakers.acquire("beta")
        assert breakers.state("beta") == CircuitState.CLOSED
        assert breakers.health() == 0.5

    def test_snapshot_is_a_copy(self, breakers):
        _trip(breakers, times=1)
        snap = breakers.snapshot()
        snap["alpha"].failure_times.clear()
        assert breakers.snapshot()["alpha"].failure_count == 1


class TestClassifyError:
    """Mapping provider exceptions onto the error taxonomy."""

    @pytest.mark.parametrize("status,expected", [
        (401, SourceAuthFailure),
        (403, SourceAuthFailure),
        (404, SourceValidationError),
        (422, SourceValidationError),
        (429, SourceUnavailable),
        (503, SourceUnavailable),
    ])
    def test_http_status(self, status, expected):
        error = classify_error(_http_error(status), "alpha")
        assert isinstance(error, expected)
        assert error.source_id == "alpha"

    def test_missing_status_is_unavailable(self):
        assert isinstance(classify_status(None, "alpha"), SourceUnavailable)

    def test_timeout(self):
        assert isinstance(classify_error(requests.Timeout("slow"), "alpha"), SourceTimeout)
        assert isinstance(classify_error(asyncio.TimeoutError(), "alpha"), SourceTimeout)

    def test_connection_error(self):
        error = classify_error(requests.ConnectionError("refused"), "alpha")
        assert isinstance(error, SourceUnavailable)
        assert error.retryable

    def test_malformed_payload(self):
        error = classify_error(KeyError("value"), "alpha")
        assert isinstance(error, SourceValidationError)
        assert not error.retryable

    def test_source_error_passes_through(self):
        original = SourceAuthFailure("alpha", "bad token")
        assert classify_error(original, "alpha") is original


class TestRetryPolicy:
    def test_exponential_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1, multiplier=2, max_delay=5, jitter=0)
        rng = random.Random(0)
        assert [policy.delay(n, rng) for n in range(1, 5)] == [1, 2, 4, 5]

    def test_jitter_stays_in_bounds(self):
        policy = RetryPolicy(base_delay=1, multiplier=2, max_delay=5, jitter=0.25)
        rng = random.Random(7)
        for _ in range(50):
            assert 0.75 <= policy.delay(1, rng) <= 1.25

    def test_only_transient_errors_retry(self):
        policy = RetryPolicy(max_retries=2)
        assert policy.should_retry(SourceUnavailable("a", "down"), 1)
        assert policy.should_retry(SourceTimeout("a", "slow"), 2)
        assert not policy.should_retry(SourceTimeout("a", "slow"), 3)
        assert not policy.should_retry(SourceAuthFailure("a", "denied"), 1)
        assert not policy.should_retry(SourceValidationError("a", "bad"), 1)


class TestResilienceManager:
    """Calls through breakers and retries."""

    @pytest.fixture
    def retrying(self, breakers, fake_sleep):
        return ResilienceManager(
            breakers,
            RetryPolicy(max_retries=3, base_delay=1, jitter=0),
            sleep=fake_sleep,
        )

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, retrying, sleeps):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise SourceUnavailable("alpha", "busy")
            return 42

        assert await retrying.call("alpha", flaky) == 42
        assert len(calls) == 3
        assert sleeps == [1, 2]
        assert retrying.breakers.state("alpha") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, retrying, sleeps):
        calls = []

        async def denied():
            calls.append(1)
            raise SourceAuthFailure("alpha", "denied")

        with pytest.raises(SourceAuthFailure):
            await retrying.call("alpha", denied)
        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_stop_once_breaker_opens(self, retrying):
        calls = []

        async def down():
            calls.append(1)
            raise requests.ConnectionError("refused")

        with pytest.raises(SourceUnavailable) as exc_info:
            await retrying.call("alpha", down)
        assert isinstance(exc_info.value.__cause__, requests.ConnectionError)
        assert len(calls) == 3
        assert retrying.breakers.state("alpha") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_skips_operation(self, resilience):
        calls = []

        async def down():
            calls.append(1)
            raise SourceUnavailable("alpha", "down")

        for _ in range(3):
            with pytest.raises(SourceUnavailable):
                await resilience.call("alpha", down)
        assert len(calls) == 3

        with pytest.raises(CircuitOpenSkipped):
            await resilience.call("alpha", down)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_timeout_becomes_source_timeout(self, resilience):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(SourceTimeout):
            await resilience.call("alpha", slow, timeout=0.01)

    @pytest.mark.asyncio
    async def test_cancelled_trial_reopens_circuit(self, resilience, breakers, clock):
        _trip(breakers)
        clock.advance(30)
        started = asyncio.Event()
        never = asyncio.Event()

        async def hang():
            started.set()
            await never.wait()

        task = asyncio.create_task(resilience.call("alpha", hang))
        await started.wait()
        assert breakers.state("alpha") == CircuitState.HALF_OPEN

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert breakers.state("alpha") == CircuitState.OPEN
        assert breakers.snapshot()["alpha"].trial_in_flight is False

    @pytest.mark.asyncio
    async def test_cancelled_calls_are_not_failures(self, resilience, breakers):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        for _ in range(3):
            started.clear()
            task = asyncio.create_task(resilience.call("alpha", hang))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert breakers.state("alpha") == CircuitState.CLOSED
        assert breakers.snapshot()["alpha"].failure_count == 0

    @pytest.mark.asyncio
    async def test_timeout_bounds_retries(self, retrying, sleeps):
        calls = []

        async def busy():
            calls.append(1)
            raise SourceUnavailable("alpha", "busy")

        with pytest.raises(SourceUnavailable):
            await retrying.call("alpha", busy, timeout=1.5)
        # the second backoff (2s) would pass the deadline
        assert len(calls) == 2
        assert sleeps == [1]

    @pytest.mark.asyncio
    async def test_error_stats_count_by_type(self, resilience):
        async def denied():
            raise SourceAuthFailure("alpha", "denied")

        async def down():
            raise requests.ConnectionError("refused")

        with pytest.raises(SourceAuthFailure):
            await resilience.call("alpha", denied)
        with pytest.raises(SourceUnavailable):
            await resilience.call("beta", down)

        stats = resilience.error_stats()
        assert stats["error_counts"] == {
            "alpha": {"SourceAuthFailure": 1},
            "beta": {"SourceUnavailable": 1},
        }
        assert stats["total_errors"] == 2
        assert set(stats["circuits"]) == {"alpha", "beta"}

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self, resilience, breakers):
        async def down():
            raise SourceUnavailable("alpha", "down")

        for _ in range(3):
            with pytest.raises(SourceUnavailable):
                await resilience.call("alpha", down)
        assert breakers.state("alpha") == CircuitState.OPEN

        assert resilience.reset("alpha") is True
        assert breakers.state("alpha") == CircuitState.CLOSED
        assert breakers.snapshot()["alpha"].next_retry_at is None
        assert "alpha" not in resilience.error_stats()["error_counts"]
        assert resilience.reset("unknown") is False
