"""Interval triggers that start maintenance tasks."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from photo_jobs.config import MaintenanceSettings
from photo_jobs.jobs.tasks import TaskOrchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PeriodicTask:
    task_type: str
    interval_seconds: float
    next_due: float = 0.0


def default_periodic_tasks(settings: MaintenanceSettings) -> list[PeriodicTask]:
    return [
        PeriodicTask("maintenance_global", settings.maintenance_interval_seconds),
        PeriodicTask("project_scavenge_global", settings.scavenge_interval_seconds),
        PeriodicTask("folder_discovery", settings.folder_discovery_interval_seconds),
    ]


class PeriodicTaskTrigger:
    """Starts each task once after ``initial_delay_seconds``, then on its interval."""

    def __init__(
        self,
        *,
        orchestrator: TaskOrchestrator,
        tasks: list[PeriodicTask],
        initial_delay_seconds: float = 5.0,
        source: str = "maintenance",
    ) -> None:
        self.orchestrator = orchestrator
        self.tasks = tasks
        self.initial_delay_seconds = initial_delay_seconds
        self.source = source
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        first_due = time.monotonic() + self.initial_delay_seconds
        for task in self.tasks:
            task.next_due = first_due
        self._thread = threading.Thread(target=self._loop, daemon=True, name="periodic-tasks")
        self._thread.start()
        logger.info(
            "Periodic triggers started: %s",
            ", ".join(f"{task.task_type}/{task.interval_seconds:g}s" for task in self.tasks),
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def fire_due(self, now: float | None = None) -> list[str]:
        """Start every task whose time has come; returns the started task ids."""

        current = time.monotonic() if now is None else now
        started: list[str] = []
        for task in self.tasks:
            if task.next_due > current:
                continue
            task.next_due = current + task.interval_seconds
            try:
                result = self.orchestrator.start_task(task.task_type, source=self.source)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to start periodic task %s", task.task_type)
                continue
            logger.info("Started periodic task %s (%s)", task.task_type, result.task_id)
            started.append(result.task_id)
        return started

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.fire_due()
            next_due = min((task.next_due for task in self.tasks), default=None)
            if next_due is None:
                return
            self._stop.wait(timeout=max(0.05, next_due - time.monotonic()))
