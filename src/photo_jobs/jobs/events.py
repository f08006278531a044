"""Outbound status events for job lifecycle changes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from photo_jobs.jobs.models import StatusEvent

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusEvent], None]


class StatusEventSink(Protocol):
    """Destination for status changes; must not raise into the scheduler."""

    def emit(self, event: StatusEvent) -> None: ...


class LoggingEventSink:
    """Default sink: one debug line per status change."""

    def emit(self, event: StatusEvent) -> None:
        logger.debug(
            "Job %s -> %s (task=%s type=%s progress=%s/%s)",
            event.job_id,
            event.status.value,
            event.task_id,
            event.task_type,
            event.progress_done,
            event.progress_total,
        )


class BroadcastEventSink:
    """Fan-out to in-process listeners (SSE bridge, tests, CLI)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener and return a callable that unsubscribes it."""

        with self._lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, event: StatusEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Status listener failed for job %s", event.job_id)


def safe_emit(sink: StatusEventSink, event: StatusEvent) -> None:
    """Emit without letting a broken sink interrupt job bookkeeping."""

    try:
        sink.emit(event)
    except Exception:  # noqa: BLE001
        logger.exception("Status event sink failed for job %s", event.job_id)
