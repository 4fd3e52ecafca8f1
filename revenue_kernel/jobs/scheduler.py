"""In-process periodic runner for deployments without an external cron.

Every tick it runs the tasks whose interval has elapsed. Tasks still go
through their cron locks, so several app processes running the scheduler
never overlap on the same task.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from revenue_kernel.config import SCHEDULER_SETTINGS
from revenue_kernel.jobs.tasks import (
    TaskContext,
    run_attempt_cap_task,
    run_reconcile_enqueue_task,
    run_reconcile_run_task,
    run_recover_processing_task,
    run_upload_task,
)
from revenue_kernel.utils import get_logger

logger = get_logger(__name__)


class ScheduledTask:
    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], Dict[str, Any]]):
        self.name = name
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.fn = fn
        self.next_run_at = 0.0
        self.last_result: Optional[Dict[str, Any]] = None

    def due(self, now: float) -> bool:
        return now >= self.next_run_at


def default_tasks(ctx: TaskContext) -> List[ScheduledTask]:
    upload = int(SCHEDULER_SETTINGS["upload_interval_seconds"])  # type: ignore[arg-type]
    sweep = int(SCHEDULER_SETTINGS["sweep_interval_seconds"])  # type: ignore[arg-type]
    reconcile = int(SCHEDULER_SETTINGS["reconcile_interval_seconds"])  # type: ignore[arg-type]
    return [
        ScheduledTask("upload", upload, lambda: run_upload_task(ctx)),
        ScheduledTask("attempt_cap", sweep, lambda: run_attempt_cap_task(ctx)),
        ScheduledTask("recover_processing", sweep, lambda: run_recover_processing_task(ctx)),
        ScheduledTask("reconcile_enqueue", reconcile, lambda: run_reconcile_enqueue_task(ctx)),
        ScheduledTask("reconcile_run", reconcile, lambda: run_reconcile_run_task(ctx)),
    ]


class PeriodicScheduler:
    def __init__(self, tasks: List[ScheduledTask], *, tick_seconds: float = 1.0):
        self.tasks = tasks
        self.tick_seconds = tick_seconds
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="periodic-scheduler", daemon=True)
        self._thread.start()
        logger.info("Periodic scheduler started", tasks=[t.name for t in self.tasks])

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        logger.info("Periodic scheduler stopped")

    def run_pending(self, now: Optional[float] = None) -> int:
        """Run every due task once; returns how many ran."""
        now = time.monotonic() if now is None else now
        ran = 0
        for task in self.tasks:
            if not task.due(now):
                continue
            task.next_run_at = now + task.interval_seconds
            ran += 1
            try:
                task.last_result = task.fn()
                logger.debug("Scheduled task finished", task=task.name, result=task.last_result)
            except Exception as e:
                logger.error("Scheduled task failed", task=task.name, error=str(e), exc_info=True)
        return ran

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(self.tick_seconds)


__all__ = ["ScheduledTask", "PeriodicScheduler", "default_tasks"]
