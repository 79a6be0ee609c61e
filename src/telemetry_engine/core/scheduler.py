"""Periodic task runner driving rollup, cost, cleanup and report ticks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from telemetry_engine.domain.models import utcnow


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    func: Callable[[], Any]
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    last_started_at: Optional[datetime] = None
    last_error: Optional[str] = None


class PeriodicTaskRunner:
    """Runs each registered task on its own daemon thread.

    A tick of a task never overlaps another tick of the same task: when the
    previous one is still running the new tick is skipped. Exceptions are
    logged and the task keeps its schedule.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._clock = clock or utcnow
        self._tasks: Dict[str, PeriodicTask] = {}
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._logger = logger or logging.getLogger(__name__)

    def register(
        self, name: str, interval_seconds: float, func: Callable[[], Any]
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        if name in self._tasks:
            raise ValueError(f"Task '{name}' is already registered")
        self._tasks[name] = PeriodicTask(name, interval_seconds, func)

    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    def run_now(self, name: str) -> bool:
        """Run one tick synchronously; returns False when it was skipped."""

        try:
            task = self._tasks[name]
        except KeyError as exc:
            raise KeyError(f"Unknown task '{name}'") from exc
        return self._tick(task)

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for task in self._tasks.values():
            thread = threading.Thread(
                target=self._loop, args=(task,), name=f"tick-{task.name}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        self._logger.info(
            "scheduler_started", extra={"tasks": sorted(self._tasks)}
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _loop(self, task: PeriodicTask) -> None:
        while not self._stop_event.wait(task.interval_seconds):
            self._tick(task)

    def _tick(self, task: PeriodicTask) -> bool:
        if not task.lock.acquire(blocking=False):
            self._logger.warning(
                "tick_skipped",
                extra={"tick": task.name, "timestamp": self._clock().isoformat()},
            )
            return False
        try:
            task.last_started_at = self._clock()
            task.func()
            task.last_error = None
        except Exception as exc:
            task.last_error = str(exc)
            self._logger.exception(
                "tick_failed",
                extra={
                    "tick": task.name,
                    "timestamp": task.last_started_at.isoformat()
                    if task.last_started_at
                    else None,
                },
            )
        finally:
            task.lock.release()
        return True
