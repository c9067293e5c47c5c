"""Tests for the circuit breaker."""


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_at_threshold(self):
        """The breaker opens once failures reach the threshold."""
        from orchestrator.breaker import BreakerState, CircuitBreaker

        breaker = CircuitBreaker(failure_threshold=3)

        assert breaker.record_failure() is False
        assert breaker.record_failure() is False
        assert breaker.record_failure() is True
        assert breaker.state == BreakerState.OPEN
        assert breaker.allow_request() is False

    def test_half_open_after_cooldown(self):
        """After the cooldown one trial is allowed; success closes the breaker."""
        from orchestrator.breaker import BreakerState, CircuitBreaker

        now = [100.0]
        breaker = CircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=lambda: now[0])
        breaker.record_failure()

        now[0] = 105.0
        assert breaker.allow_request() is False

        now[0] = 111.0
        assert breaker.allow_request() is True
        assert breaker.state == BreakerState.HALF_OPEN

        breaker.record_success()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_half_open_failure_reopens(self):
        """A failed trial opens the breaker again."""
        from orchestrator.breaker import BreakerState, CircuitBreaker

        now = [0.0]
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=1, clock=lambda: now[0])
        breaker.record_failure()
        breaker.record_failure()

        now[0] = 2.0
        breaker.allow_request()
        breaker.record_failure()

        assert breaker.state == BreakerState.OPEN
        assert breaker.opened_at == 2.0
