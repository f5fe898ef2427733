from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerConfig:
    failures: int
    window_seconds: int
    cooldown_seconds: int


class CircuitBreaker:
    """
    Failure-window breaker guarding a flaky dependency (the remote content store).

    OPEN short-circuits calls until the cooldown elapses; HALF_OPEN lets exactly one
    trial call through.
    """

    def __init__(
        self,
        cfg: BreakerConfig,
        *,
        clock: Callable[[], float] = time.time,
        on_state_change: Optional[Callable[[BreakerState, "CircuitBreaker"], None]] = None,
    ):
        self.cfg = cfg
        self._clock = clock
        self._lock = threading.Lock()
        self._fail_times: List[float] = []
        self._state = BreakerState.CLOSED
        self._opened_at: Optional[float] = None
        self._half_open_tested: bool = False
        self._on_state_change = on_state_change

    def state(self) -> BreakerState:
        with self._lock:
            self._update_state_locked()
            return self._state

    def allow(self) -> bool:
        with self._lock:
            self._update_state_locked()
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.OPEN:
                return False
            # HALF_OPEN: allow exactly one test call
            if not self._half_open_tested:
                self._half_open_tested = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            old = self._state
            self._fail_times.clear()
            self._state = BreakerState.CLOSED
            self._opened_at = None
            self._half_open_tested = False
            self._notify(old)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._fail_times.append(now)
            cutoff = now - float(self.cfg.window_seconds)
            self._fail_times = [t for t in self._fail_times if t >= cutoff]
            if self._state == BreakerState.HALF_OPEN or len(self._fail_times) >= int(self.cfg.failures):
                old = self._state
                self._state = BreakerState.OPEN
                self._opened_at = now
                self._half_open_tested = False
                self._notify(old)

    def _update_state_locked(self) -> None:
        if self._state == BreakerState.OPEN and self._opened_at is not None:
            if (self._clock() - self._opened_at) >= float(self.cfg.cooldown_seconds):
                old = self._state
                self._state = BreakerState.HALF_OPEN
                self._half_open_tested = False
                self._notify(old)

    def _notify(self, old: BreakerState) -> None:
        if old != self._state and self._on_state_change:
            self._on_state_change(self._state, self)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            cutoff = self._clock() - float(self.cfg.window_seconds)
            window = [t for t in self._fail_times if t >= cutoff]
            opened_at = self._opened_at
            cooldown_until = (opened_at + float(self.cfg.cooldown_seconds)) if opened_at else None
            return {
                "state": self._state.value,
                "opened_at": opened_at,
                "cooldown_until": cooldown_until,
                "failure_count_window": len(window),
            }
