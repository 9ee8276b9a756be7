"""Circuit breaker guarding calls to the market-data API."""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = 'CLOSED'         # calls flow
    OPEN = 'OPEN'             # calls short-circuit until open_until
    HALF_OPEN = 'HALF_OPEN'   # one trial call decides


class CircuitBreaker:
    """Trips after `fail_threshold` consecutive failures, then waits
    `reset_seconds` before letting a single trial call through. A failed trial
    re-opens immediately; any success closes it again.
    """

    def __init__(self, fail_threshold: int, reset_seconds: float, name: str = 'coinbase',
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.state = BreakerState.CLOSED
        self.failures = 0
        self.open_until = 0.0
        self.times_opened = 0
        self._trial_inflight = False

    def _trip(self, now: float) -> None:
        self.state = BreakerState.OPEN
        self.open_until = now + self.reset_seconds
        self.times_opened += 1
        self._trial_inflight = False

    def allow(self) -> bool:
        now = self._clock()
        with self._lock:
            if self.state is BreakerState.OPEN:
                if now < self.open_until:
                    return False
                self.state = BreakerState.HALF_OPEN
                self._trial_inflight = False
            if self.state is BreakerState.HALF_OPEN:
                if self._trial_inflight:
                    return False
                self._trial_inflight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            recovered_from = self.state
            self.state = BreakerState.CLOSED
            self.failures = 0
            self.open_until = 0.0
            self._trial_inflight = False
        if recovered_from is not BreakerState.CLOSED:
            logger.info(f"circuit_breaker.reset {self.name} (was {recovered_from.value})",
                        extra={'event': 'circuit_reset'})

    def record_failure(self) -> None:
        now = self._clock()
        with self._lock:
            self.failures += 1
            if self.state is BreakerState.HALF_OPEN:
                self._trip(now)
                event = 'circuit_reopen'
            elif self.state is BreakerState.CLOSED and self.failures >= self.fail_threshold:
                self._trip(now)
                event = 'circuit_open'
            else:
                return
            failures, until = self.failures, self.open_until
        logger.warning(f"circuit_breaker.{event.split('_')[1]} {self.name}: {failures} failures, "
                       f"retry after {until:.0f}", extra={'event': event})

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'name': self.name,
                'state': self.state.value,
                'failures': self.failures,
                'open_until': self.open_until,
                'times_opened': self.times_opened,
            }


__all__ = ['CircuitBreaker', 'BreakerState']
