"""Time sources shared by the store, the rate limiter and the incident timers."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class SystemClock:
    """Wall clock backed by ``threading.Timer`` for delayed callbacks."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay, 0.0), callback)
        timer.daemon = True
        timer.start()
        return timer


class _ManualTimer:
    def __init__(self, due: float, seq: int, callback: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Clock that only moves when told to.

    ``advance()`` fires every timer that became due, in due order, on the
    calling thread. Used to fast-forward incident recovery and TTLs.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._timers: List[_ManualTimer] = []
        self._seq = 0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._elapsed

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        with self._lock:
            self._seq += 1
            timer = _ManualTimer(self._elapsed + max(delay, 0.0), self._seq, callback)
            self._timers.append(timer)
            return timer

    def pending(self) -> int:
        with self._lock:
            return sum(1 for timer in self._timers if not timer.cancelled)

    def advance(self, seconds: float = 0.0, **delta: float) -> None:
        step = seconds + timedelta(**delta).total_seconds()
        with self._lock:
            target = self._elapsed + step
        while True:
            with self._lock:
                due = [t for t in self._timers if not t.cancelled and t.due <= target]
                if not due:
                    self._now += timedelta(seconds=target - self._elapsed)
                    self._elapsed = target
                    self._timers = [t for t in self._timers if not t.cancelled]
                    return
                timer = min(due, key=lambda t: (t.due, t.seq))
                self._timers.remove(timer)
                # move time up to the timer so callbacks observe their own due time
                self._now += timedelta(seconds=timer.due - self._elapsed)
                self._elapsed = max(self._elapsed, timer.due)
            timer.callback()
