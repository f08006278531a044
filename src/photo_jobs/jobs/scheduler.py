"""Polling scheduler that claims queued jobs into two priority lanes."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from photo_jobs.config import PipelineSettings
from photo_jobs.jobs.events import LoggingEventSink, StatusEventSink, safe_emit
from photo_jobs.jobs.handlers import HandlerRegistry, JobContext, UnknownJobTypeError
from photo_jobs.jobs.models import JobStatus, JobView, Lane, StatusEvent
from photo_jobs.jobs.repository import JobRepository
from photo_jobs.jobs.tasks import TaskOrchestrator

logger = logging.getLogger(__name__)


class _HeartbeatThread:
    """Keeps a running job's lease fresh until stopped."""

    def __init__(
        self,
        repository: JobRepository,
        job_id: int,
        worker_id: str,
        interval_seconds: float,
    ) -> None:
        self._repository = repository
        self._job_id = job_id
        self._worker_id = worker_id
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"job-heartbeat-{job_id}",
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval + 1.0)

    def _run(self) -> None:
        while not self._stop.wait(timeout=self._interval):
            try:
                if not self._repository.heartbeat(job_id=self._job_id, worker_id=self._worker_id):
                    logger.warning("Job %s lease lost; heartbeat stopped", self._job_id)
                    return
            except Exception:  # noqa: BLE001
                logger.warning("Heartbeat failed for job %s", self._job_id, exc_info=True)


class JobScheduler:
    """Claims jobs on a fixed poll interval and runs them on a bounded executor.

    Slots are split statically: ``priority_slots`` for jobs at or above
    ``priority_threshold`` and the rest for everything below it, so a flood of
    background work can never hold back urgent jobs and the other way round.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        orchestrator: TaskOrchestrator,
        settings: PipelineSettings,
        event_sink: StatusEventSink | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.orchestrator = orchestrator
        self.settings = settings
        self.event_sink: StatusEventSink = event_sink or LoggingEventSink()
        self.worker_id = worker_id or settings.worker_id
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active: dict[Lane, set[int]] = {Lane.PRIORITY: set(), Lane.NORMAL: set()}
        self._processed = 0
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._poller: threading.Thread | None = None

    # -- lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        if self._poller is not None:
            return
        for warning in self.settings.sanity_warnings():
            logger.warning("Scheduler configuration: %s", warning)
        missing = self.registry.missing()
        if missing:
            logger.info(
                "No handler registered for job types: %s",
                ", ".join(job_type.value for job_type in missing),
            )
        self._stop.clear()
        self._ensure_executor()
        self._poller = threading.Thread(target=self._poll_loop, daemon=True, name="job-scheduler")
        self._poller.start()
        logger.info(
            "Job scheduler started: worker=%s priority_slots=%d normal_slots=%d threshold=%d",
            self.worker_id,
            self.settings.priority_slots,
            self.settings.normal_slots,
            self.settings.priority_threshold,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for running handlers up to ``timeout`` seconds."""

        self._stop.set()
        self._wake.set()
        if self._poller is not None:
            self._poller.join(timeout=timeout)
            self._poller = None
        if not self.wait_idle(timeout=timeout):
            logger.warning("Scheduler stopped with jobs still running: %s", self.active_counts())
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Job scheduler stopped")

    @property
    def running(self) -> bool:
        return self._poller is not None and not self._stop.is_set()

    def wake(self) -> None:
        """Request an immediate tick instead of waiting for the poll interval."""

        self._wake.set()

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._wake.wait(timeout=self.settings.poll_interval_seconds)
            self._wake.clear()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.total_slots,
                thread_name_prefix="job-handler",
            )
        return self._executor

    # -- polling -----------------------------------------------------------------

    def tick(self) -> int:
        """Recover stale leases and fill free lane slots; returns jobs dispatched."""

        dispatched = 0
        try:
            self._recover_stale()
            dispatched += self._fill_lane(
                Lane.PRIORITY,
                slots=self.settings.priority_slots,
                min_priority=self.settings.priority_threshold,
                max_priority=None,
            )
            dispatched += self._fill_lane(
                Lane.NORMAL,
                slots=self.settings.normal_slots,
                min_priority=None,
                max_priority=self.settings.priority_threshold - 1,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Scheduler tick failed")
        return dispatched

    def _recover_stale(self) -> None:
        try:
            requeued = self.repository.requeue_stale_running(
                stale_seconds=self.settings.stale_seconds,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Stale job recovery failed")
            return
        if not requeued:
            return
        logger.warning("Requeued %d stale running jobs: %s", len(requeued), requeued)
        for job_id in requeued:
            job = self.repository.get(job_id=job_id)
            if job is not None:
                safe_emit(self.event_sink, StatusEvent.for_job(job, JobStatus.QUEUED))

    def _fill_lane(
        self,
        lane: Lane,
        *,
        slots: int,
        min_priority: int | None,
        max_priority: int | None,
    ) -> int:
        dispatched = 0
        while not self._stop.is_set():
            with self._lock:
                if len(self._active[lane]) >= slots:
                    break
            job = self.repository.claim_next(
                worker_id=self.worker_id,
                min_priority=min_priority,
                max_priority=max_priority,
            )
            if job is None:
                break
            with self._lock:
                self._active[lane].add(job.id)
            logger.info(
                "Claimed job %s type=%s priority=%s lane=%s",
                job.id,
                job.type,
                job.priority,
                lane.value,
            )
            safe_emit(
                self.event_sink,
                StatusEvent.for_job(
                    job,
                    JobStatus.RUNNING,
                    progress_done=job.progress_done,
                    progress_total=job.progress_total,
                ),
            )
            self._ensure_executor().submit(self._run_job, job, lane)
            dispatched += 1
        return dispatched

    # -- execution ---------------------------------------------------------------

    def _run_job(self, job: JobView, lane: Lane) -> None:
        try:
            self._execute(job)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error while finishing job %s", job.id)
        finally:
            with self._lock:
                self._active[lane].discard(job.id)
                self._processed += 1
                self._idle.notify_all()
            self._wake.set()

    def _execute(self, job: JobView) -> None:
        if job.max_attempts is None:
            self.repository.set_default_max_attempts(
                job_id=job.id,
                max_attempts=self.settings.max_attempts_default,
            )
            job.max_attempts = self.settings.max_attempts_default

        try:
            handler = self.registry.resolve(job.type)
        except UnknownJobTypeError as error:
            logger.error("Job %s failed without retry: %s", job.id, error)
            if self.repository.fail(
                job_id=job.id,
                message=str(error),
                worker_id=self.worker_id,
            ):
                safe_emit(self.event_sink, StatusEvent.for_job(job, JobStatus.FAILED))
            return

        context = JobContext(
            repository=self.repository,
            report_progress=lambda done, total: self._report_progress(job, done, total),
            is_canceled=lambda: self._is_canceled(job.id),
        )
        heartbeat = _HeartbeatThread(
            self.repository,
            job.id,
            self.worker_id,
            self.settings.heartbeat_seconds,
        )
        failure: Exception | None = None
        heartbeat.start()
        try:
            handler.run(job, context)
        except Exception as error:  # noqa: BLE001
            failure = error
        finally:
            heartbeat.stop()

        if failure is None:
            self._handle_success(job)
        else:
            self._handle_failure(job, failure)

    def _handle_success(self, job: JobView) -> None:
        if not self.repository.complete(job_id=job.id, worker_id=self.worker_id):
            logger.info("Job %s left running state during execution; result dropped", job.id)
            return
        logger.info("Job %s (%s) completed", job.id, job.type)
        safe_emit(self.event_sink, StatusEvent.for_job(job, JobStatus.COMPLETED))
        completed = self.repository.get(job_id=job.id) or job
        try:
            self.orchestrator.on_job_completed(completed)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to advance task for job %s", job.id)

    def _handle_failure(self, job: JobView, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        if not self.repository.increment_attempts(job_id=job.id, worker_id=self.worker_id):
            logger.info("Job %s left running state during execution; error dropped", job.id)
            return
        refreshed = self.repository.get(job_id=job.id)
        if refreshed is None:
            return
        max_attempts = refreshed.max_attempts or self.settings.max_attempts_default
        if refreshed.attempts < max_attempts:
            if self.repository.requeue(job_id=job.id, worker_id=self.worker_id):
                logger.warning(
                    "Job %s (%s) attempt %d/%d failed, requeued: %s",
                    job.id,
                    job.type,
                    refreshed.attempts,
                    max_attempts,
                    message,
                )
                safe_emit(self.event_sink, StatusEvent.for_job(refreshed, JobStatus.QUEUED))
            return
        if self.repository.fail(job_id=job.id, message=message, worker_id=self.worker_id):
            logger.error(
                "Job %s (%s) failed after %d attempts: %s",
                job.id,
                job.type,
                refreshed.attempts,
                message,
            )
            safe_emit(self.event_sink, StatusEvent.for_job(refreshed, JobStatus.FAILED))

    def _report_progress(self, job: JobView, done: int, total: int | None) -> None:
        try:
            self.repository.update_progress(job_id=job.id, done=done, total=total)
        except Exception:  # noqa: BLE001
            logger.warning("Progress update failed for job %s", job.id, exc_info=True)
        safe_emit(
            self.event_sink,
            StatusEvent.for_job(job, JobStatus.RUNNING, progress_done=done, progress_total=total),
        )

    def _is_canceled(self, job_id: int) -> bool:
        current = self.repository.get(job_id=job_id)
        return (
            current is None
            or current.status != JobStatus.RUNNING
            or current.claimed_by != self.worker_id
        )

    # -- introspection -----------------------------------------------------------

    def active_counts(self) -> dict[Lane, int]:
        with self._lock:
            return {lane: len(ids) for lane, ids in self._active.items()}

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no lane has an active job; ``False`` on timeout."""

        with self._idle:
            return self._idle.wait_for(
                lambda: not any(self._active.values()),
                timeout=timeout,
            )

    def run_until_idle(self, *, max_seconds: float | None = None) -> int:
        """Tick until the queue offers nothing claimable and all handlers returned.

        Used by one-shot workers and tests; returns how many jobs finished.
        """

        deadline = time.monotonic() + max_seconds if max_seconds is not None else None
        start_processed = self.processed
        while True:
            dispatched = self.tick()
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.wait_idle(timeout=remaining):
                break
            if dispatched == 0:
                break
            if deadline is not None and time.monotonic() >= deadline:
                break
        return self.processed - start_processed
