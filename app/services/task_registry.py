from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from app.services.kv_store import Clock, utc_now

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], Any]


@dataclass
class ScheduledTask:
    key: str
    fire_at: datetime
    callback: Callable[[], None]
    handle: Any = None


class ScheduledTaskRegistry:
    """One-shot timers keyed by name, with explicit cancel handles.

    ``timer_factory`` follows the ``threading.Timer(interval, function)``
    signature; the returned object needs ``start()`` and ``cancel()``.
    A task leaves the registry when it fires or is cancelled.
    """

    def __init__(
        self,
        *,
        name: str = "tasks",
        clock: Clock | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.name = name
        self._clock = clock or utc_now
        self._timer_factory = timer_factory or threading.Timer
        self._lock = threading.RLock()
        self._tasks: dict[str, ScheduledTask] = {}
        self.fired = 0
        self.cancelled = 0

    def schedule(self, key: str, fire_at: datetime, callback: Callable[[], None]) -> ScheduledTask:
        """Arm ``callback`` at ``fire_at``, replacing any task under ``key``."""
        delay = max((fire_at - self._clock()).total_seconds(), 0.0)
        task = ScheduledTask(key=key, fire_at=fire_at, callback=callback)

        def _run() -> None:
            with self._lock:
                current = self._tasks.get(key)
                if current is not task:
                    return
                del self._tasks[key]
                self.fired += 1
            callback()

        with self._lock:
            self.cancel(key)
            handle = self._timer_factory(delay, _run)
            if hasattr(handle, "daemon"):
                handle.daemon = True
            task.handle = handle
            self._tasks[key] = task
            handle.start()
        logger.debug("[TIMER][armed] registry=%s key=%s delay_sec=%.1f", self.name, key, delay)
        return task

    def cancel(self, key: str) -> ScheduledTask | None:
        with self._lock:
            task = self._tasks.pop(key, None)
            if task is None:
                return None
            task.handle.cancel()
            self.cancelled += 1
        logger.debug("[TIMER][cancelled] registry=%s key=%s", self.name, key)
        return task

    def cancel_all(self) -> list[ScheduledTask]:
        with self._lock:
            keys = list(self._tasks)
            return [task for task in (self.cancel(k) for k in keys) if task is not None]

    def get(self, key: str) -> ScheduledTask | None:
        with self._lock:
            return self._tasks.get(key)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def pending(self) -> list[ScheduledTask]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda t: t.fire_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


class RecurringJob:
    """Fixed-interval ticking loop on a daemon thread."""

    def __init__(self, name: str, interval_sec: float, fn: Callable[[], Any]) -> None:
        self.name = name
        self.interval_sec = interval_sec
        self.fn = fn
        self.runs = 0
        self.errors = 0
        self.last_error: str | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_sec):
            try:
                self.fn()
                self.runs += 1
            except Exception as exc:
                self.errors += 1
                self.last_error = str(exc)
                logger.exception("[JOB][tick_error] job=%s error=%s", self.name, exc)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=f"{self.name}-job")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None
