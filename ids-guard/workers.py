"""Background execution: a bounded worker pool, periodic tasks and deferred timers.

Response side effects (firewall commands, notifications, backups) never run on
the request thread. They go through :class:`WorkerPool`, which runs the task on
the caller when the pool is saturated instead of dropping it.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Hashable, List, Optional

import structlog

from clock import Clock, SystemClock, TimerHandle

log = structlog.get_logger(__name__)


class WorkerPool:
    def __init__(self, max_workers: int = 4, queue_size: int = 64, name: str = "ids-worker") -> None:
        self.max_workers = max(0, max_workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots: Optional[threading.BoundedSemaphore] = None
        if self.max_workers > 0:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)
            self._slots = threading.BoundedSemaphore(self.max_workers + max(0, queue_size))
        self._counter_lock = threading.Lock()
        self.submitted = 0
        self.caller_runs = 0

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "Future[Any]":
        with self._counter_lock:
            self.submitted += 1
        slots = self._slots
        if self._executor is not None and slots is not None and slots.acquire(blocking=False):
            try:
                return self._executor.submit(self._run_pooled, slots, fn, args, kwargs)
            except RuntimeError:
                # executor already shut down
                slots.release()
        return self._run_inline(fn, args, kwargs)

    def _run_pooled(self, slots: threading.BoundedSemaphore, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception:
            log.exception("worker_task_failed", task=getattr(fn, "__qualname__", repr(fn)))
            raise
        finally:
            slots.release()

    def _run_inline(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> "Future[Any]":
        if self._executor is not None:
            with self._counter_lock:
                self.caller_runs += 1
            log.warning("worker_pool_saturated", task=getattr(fn, "__qualname__", repr(fn)))
        future: "Future[Any]" = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            log.exception("worker_task_failed", task=getattr(fn, "__qualname__", repr(fn)))
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def stats(self) -> Dict[str, int]:
        with self._counter_lock:
            return {
                "max_workers": self.max_workers,
                "submitted": self.submitted,
                "caller_runs": self.caller_runs,
            }


class PeriodicTask:
    """Daemon thread that calls ``fn`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], Any]) -> None:
        self.name = name
        self.interval = max(1.0, float(interval))
        self.fn = fn
        self.runs = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"ids-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self) -> None:
        try:
            self.fn()
            self.runs += 1
        except Exception:
            # background housekeeping should never kill its own loop
            self.failures += 1
            log.exception("periodic_task_failed", task=self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()


class Scheduler:
    def __init__(self) -> None:
        self._tasks: Dict[str, PeriodicTask] = {}
        self._running = False

    def every(self, name: str, interval: float, fn: Callable[[], Any]) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"periodic task {name!r} already registered")
        task = PeriodicTask(name, interval, fn)
        self._tasks[name] = task
        if self._running:
            task.start()
        return task

    def names(self) -> List[str]:
        return sorted(self._tasks)

    def run_all_once(self) -> None:
        for task in self._tasks.values():
            task.run_once()

    def start(self) -> None:
        self._running = True
        for task in self._tasks.values():
            task.start()
        log.info("scheduler_started", tasks=self.names())

    def stop(self) -> None:
        self._running = False
        for task in self._tasks.values():
            task.stop()


class DeferredTasks:
    """One-shot timers keyed by id; re-scheduling a key replaces its timer."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._handles: Dict[Hashable, TimerHandle] = {}
        self._lock = threading.Lock()

    def schedule(self, key: Hashable, delay: float, fn: Callable[[], Any]) -> None:
        def fire() -> None:
            with self._lock:
                if self._handles.get(key) is not handle:
                    return
                del self._handles[key]
            try:
                fn()
            except Exception:
                log.exception("deferred_task_failed", key=str(key))

        with self._lock:
            previous = self._handles.pop(key, None)
            if previous is not None:
                previous.cancel()
            handle = self.clock.call_later(delay, fire)
            self._handles[key] = handle

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._handles

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.cancel()
