"""Circuit breaker state machine tests (driven by a fake clock)."""

import pytest

from securerelay.client.circuit_breaker import BreakerState, CircuitBreaker


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker(failure_threshold=3, cooldown=10.0, clock=fake_clock)


class TestCircuitBreaker:
    def test_starts_closed(self, breaker):
        assert breaker.state == BreakerState.CLOSED
        assert breaker.allow_request()

    def test_opens_after_consecutive_failures(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert not breaker.allow_request()

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.consecutive_failures == 1
        assert breaker.state == BreakerState.CLOSED

    def test_half_open_after_cooldown(self, breaker, fake_clock):
        for _ in range(3):
            breaker.record_failure()

        fake_clock.advance(9.9)
        assert not breaker.allow_request()

        fake_clock.advance(0.1)
        assert breaker.state == BreakerState.HALF_OPEN
        assert breaker.allow_request()
        # Only one trial call at a time
        assert not breaker.allow_request()

    def test_half_open_success_closes(self, breaker, fake_clock):
        for _ in range(3):
            breaker.record_failure()
        fake_clock.advance(10.0)
        assert breaker.allow_request()

        breaker.record_success()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.allow_request()

    def test_half_open_failure_reopens(self, breaker, fake_clock):
        for _ in range(3):
            breaker.record_failure()
        fake_clock.advance(10.0)
        assert breaker.allow_request()

        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        fake_clock.advance(5.0)
        assert not breaker.allow_request()
        fake_clock.advance(5.0)
        assert breaker.allow_request()

    def test_reset(self, breaker):
        for _ in range(3):
            breaker.record_failure()
        breaker.reset()
        assert breaker.state == BreakerState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.parametrize("threshold, cooldown", [(0, 1.0), (1, 0.0)])
    def test_invalid_settings(self, threshold, cooldown):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=threshold, cooldown=cooldown)
