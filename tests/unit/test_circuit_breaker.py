"""
Tests for the circuit breaker guarding the remote dependency.

Tests cover:
- States and transitions
- Configurable thresholds
- Deterministic next-attempt time
- Single trial call while half-open
- Per-dependency registry and metrics
"""

import threading

import pytest

from convguard.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("anthropic", CircuitBreakerConfig(failure_threshold=3), clock=clock)


def trip(breaker, times=None):
    for _ in range(times or breaker.config.failure_threshold):
        breaker.record_failure("ConnectionError", "network down")


class TestCircuitBreakerStates:
    """Tests for circuit breaker states."""

    def test_state_values(self):
        assert CircuitState.CLOSED.value == "closed"
        assert CircuitState.OPEN.value == "open"
        assert CircuitState.HALF_OPEN.value == "half_open"

    def test_initial_state_is_closed(self, breaker):
        assert breaker.is_closed
        assert breaker.allow_request()

    def test_opens_at_threshold(self, breaker):
        trip(breaker, 2)
        assert breaker.is_closed

        trip(breaker, 1)

        assert breaker.is_open
        assert not breaker.allow_request()

    def test_success_resets_failure_count(self, breaker):
        trip(breaker, 2)

        breaker.record_success()
        trip(breaker, 2)

        assert breaker.is_closed
        assert breaker.failure_count == 2

    def test_half_open_after_recovery_timeout(self, breaker, clock):
        trip(breaker)

        clock.advance(59)
        assert breaker.is_open
        clock.advance(1)

        assert breaker.is_half_open

    def test_half_open_admits_single_trial(self, breaker, clock):
        trip(breaker)
        clock.advance(60)

        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_trial_success_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(60)
        breaker.allow_request()

        breaker.record_success()

        assert breaker.is_closed
        assert breaker.failure_count == 0

    def test_trial_failure_reopens_with_fresh_timer(self, breaker, clock):
        trip(breaker)
        clock.advance(60)
        breaker.allow_request()

        breaker.record_failure("ConnectionError", "still down")

        assert breaker.is_open
        assert breaker.next_attempt_time() == clock() + 60

    def test_reset(self, breaker):
        trip(breaker)

        breaker.reset()

        assert breaker.is_closed
        assert breaker.failure_count == 0


class TestNextAttemptTime:
    """Tests for retry timing."""

    def test_none_when_closed(self, breaker):
        assert breaker.next_attempt_time() is None
        assert breaker.seconds_until_retry() == 0.0

    def test_last_failure_plus_timeout(self, breaker, clock):
        trip(breaker)
        opened_at = clock()
        clock.advance(15)

        assert breaker.next_attempt_time() == opened_at + 60
        assert breaker.seconds_until_retry() == pytest.approx(45.0)

    def test_independent_breakers_agree(self, clock):
        """Two breakers with the same failure history make the same decision."""
        config = CircuitBreakerConfig(failure_threshold=2, recovery_timeout=30)
        first = CircuitBreaker("a", config, clock=clock)
        trip(first)
        second = CircuitBreaker("a", config, clock=clock)
        trip(second)
        clock.advance(30)

        assert first.state == second.state == CircuitState.HALF_OPEN
        assert first.allow_request() and second.allow_request()


class TestFailureRecordsAndMetrics:
    """Tests for observability."""

    def test_failure_records_bounded(self, clock):
        breaker = CircuitBreaker(
            "x", CircuitBreakerConfig(failure_threshold=100, max_failure_records=3), clock=clock
        )

        for i in range(5):
            breaker.record_failure("E", f"failure {i}")

        assert [r.message for r in breaker.recent_failures()] == [
            "failure 2",
            "failure 3",
            "failure 4",
        ]

    def test_metrics(self, breaker, clock):
        breaker.record_success()
        trip(breaker)

        metrics = breaker.get_metrics()

        assert metrics.name == "anthropic"
        assert metrics.state == CircuitState.OPEN
        assert metrics.failure_count == 3
        assert metrics.success_count == 1
        assert metrics.open_count == 1
        assert metrics.to_dict()["state"] == "open"
        assert metrics.to_dict()["next_attempt_time"] == clock() + 60

    def test_concurrent_failures_counted_exactly(self, clock):
        breaker = CircuitBreaker(
            "x", CircuitBreakerConfig(failure_threshold=1000), clock=clock
        )

        def worker():
            for _ in range(100):
                breaker.record_failure()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert breaker.failure_count == 800


class TestCircuitBreakerRegistry:
    """Tests for per-dependency breakers."""

    def test_same_dependency_same_breaker(self, clock):
        registry = CircuitBreakerRegistry(clock=clock)

        assert registry.get("anthropic") is registry.get("anthropic")
        assert registry.get("anthropic") is not registry.get("openai")
        assert sorted(registry.dependencies()) == ["anthropic", "openai"]

    def test_dependencies_isolated(self, clock):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=clock)

        registry.get("anthropic").record_failure()

        metrics = registry.get_all_metrics()
        assert metrics["anthropic"].state == CircuitState.OPEN
        assert registry.get("openai").is_closed
