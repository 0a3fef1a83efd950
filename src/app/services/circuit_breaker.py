from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CircuitBreakerOptions:
    failure_threshold: int = 5
    failure_window: timedelta = timedelta(minutes=10)
    block_duration: timedelta = timedelta(minutes=30)


@dataclass
class _OriginCircuit:
    failures: deque = field(default_factory=deque)
    blocked_until: Optional[datetime] = None


class CircuitBreaker:
    """
    Per-origin failure accounting.

    Failures are kept in a rolling window; once the window holds
    ``failure_threshold`` of them the origin is blocked for ``block_duration``.
    A success does not clear the window, only time does. Each origin owns its
    own record in a shared dict, so concurrent pipelines may overcount
    slightly but never block each other on a lock.
    """

    def __init__(self, options: CircuitBreakerOptions | None = None, clock: Clock | None = None):
        self.options = options or CircuitBreakerOptions()
        self._clock = clock or _now_utc
        self._circuits: dict[str, _OriginCircuit] = {}

    def allow_request(self, origin: str) -> bool:
        circuit = self._circuits.get(origin)
        if circuit is None or circuit.blocked_until is None:
            return True

        now = self._clock()
        if now < circuit.blocked_until:
            return False

        logger.info("circuit.recovered origin=%s", origin)
        circuit.blocked_until = None
        circuit.failures.clear()
        return True

    def is_open(self, origin: str) -> bool:
        return not self.allow_request(origin)

    def record_failure(self, origin: str) -> None:
        now = self._clock()
        circuit = self._circuits.setdefault(origin, _OriginCircuit())
        circuit.failures.append(now)
        self._trim(circuit, now)

        if circuit.blocked_until is None and len(circuit.failures) >= self.options.failure_threshold:
            circuit.blocked_until = now + self.options.block_duration
            logger.warning(
                "circuit.opened origin=%s failures=%d blocked_until=%s",
                origin,
                len(circuit.failures),
                circuit.blocked_until.isoformat(),
            )

    def record_success(self, origin: str) -> None:
        circuit = self._circuits.get(origin)
        if circuit is not None:
            self._trim(circuit, self._clock())

    def failure_count(self, origin: str) -> int:
        circuit = self._circuits.get(origin)
        if circuit is None:
            return 0
        self._trim(circuit, self._clock())
        return len(circuit.failures)

    def _trim(self, circuit: _OriginCircuit, now: datetime) -> None:
        cutoff = now - self.options.failure_window
        while circuit.failures and circuit.failures[0] <= cutoff:
            circuit.failures.popleft()
