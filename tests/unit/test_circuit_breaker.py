from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.app.services.circuit_breaker import CircuitBreaker, CircuitBreakerOptions

ORIGIN = "https://recipes.example:443"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class TestCircuitBreaker:
    def test_opens_after_five_failures_within_window(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)

        for _ in range(4):
            breaker.record_failure(ORIGIN)
            clock.advance(minutes=2)
        assert breaker.allow_request(ORIGIN)

        clock.advance(minutes=1)
        breaker.record_failure(ORIGIN)

        assert not breaker.allow_request(ORIGIN)
        assert breaker.is_open(ORIGIN)

    def test_recovers_after_block_duration(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        for _ in range(5):
            breaker.record_failure(ORIGIN)

        clock.advance(minutes=29)
        assert not breaker.allow_request(ORIGIN)

        clock.advance(minutes=1, seconds=1)
        assert breaker.allow_request(ORIGIN)
        assert breaker.failure_count(ORIGIN) == 0

    def test_failures_outside_window_do_not_count(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        for _ in range(4):
            breaker.record_failure(ORIGIN)
        clock.advance(minutes=11)
        breaker.record_failure(ORIGIN)

        assert breaker.allow_request(ORIGIN)
        assert breaker.failure_count(ORIGIN) == 1

    def test_success_does_not_reset_window(self) -> None:
        clock = FakeClock()
        breaker = CircuitBreaker(clock=clock)
        for _ in range(4):
            breaker.record_failure(ORIGIN)
        breaker.record_success(ORIGIN)

        assert breaker.failure_count(ORIGIN) == 4
        breaker.record_failure(ORIGIN)
        assert not breaker.allow_request(ORIGIN)

    def test_origins_are_independent(self) -> None:
        breaker = CircuitBreaker(CircuitBreakerOptions(failure_threshold=2), clock=FakeClock())
        breaker.record_failure(ORIGIN)
        breaker.record_failure(ORIGIN)

        assert not breaker.allow_request(ORIGIN)
        assert breaker.allow_request("https://other.example:443")
