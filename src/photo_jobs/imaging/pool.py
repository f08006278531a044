"""Bounded thread pool for CPU-bound derivative generation.

Threads are created on first use and torn down after an idle period, so an
idle engine holds no image workers. Each worker thread owns an inbox and
reports on a shared result channel; a supervisor thread drains the channel,
settles futures and hands the next queued task to the freed worker. A worker
that dies is replaced on its own and its in-flight task goes back to the head
of the queue a bounded number of times.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any

from photo_jobs.imaging.derivatives import DerivativeResult, PoolTask, process_image

logger = logging.getLogger(__name__)

ProcessFn = Callable[[PoolTask], list[DerivativeResult]]


class PoolShutdownError(RuntimeError):
    """Raised for tasks submitted to, or still pending in, a stopped pool."""


class PoolWorkerCrashedError(RuntimeError):
    """Raised when a task keeps killing the worker thread running it."""


@dataclass(slots=True)
class PoolStats:
    worker_count: int
    busy_workers: int
    queue_length: int
    active_jobs: int


@dataclass(slots=True)
class _PoolJob:
    job_id: int
    task: PoolTask
    future: Future[list[DerivativeResult]]
    queued_at: float = field(default_factory=time.monotonic)
    restarts: int = 0
    worker_index: int | None = None


@dataclass(frozen=True, slots=True)
class _Outcome:
    generation: int
    index: int
    job_id: int
    result: list[DerivativeResult] | None
    error: Exception | None


@dataclass(frozen=True, slots=True)
class _WorkerExit:
    generation: int
    index: int
    error: BaseException


_STOP = object()


class _WorkerThread:
    def __init__(
        self,
        *,
        index: int,
        generation: int,
        process: ProcessFn,
        results: queue.Queue[Any],
    ) -> None:
        self.index = index
        self.generation = generation
        self.busy = False
        self.inbox: queue.Queue[tuple[int, PoolTask] | None] = queue.Queue()
        self._process = process
        self._results = results
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"image-worker-{generation}-{index}",
        )

    def start(self) -> None:
        self.thread.start()

    def _run(self) -> None:
        try:
            while True:
                message = self.inbox.get()
                if message is None:
                    return
                job_id, task = message
                try:
                    result = self._process(task)
                except Exception as error:  # noqa: BLE001
                    self._results.put(_Outcome(self.generation, self.index, job_id, None, error))
                else:
                    self._results.put(_Outcome(self.generation, self.index, job_id, result, None))
        except BaseException as error:  # noqa: BLE001
            self._results.put(_WorkerExit(self.generation, self.index, error))


@dataclass(slots=True)
class _Generation:
    workers: list[_WorkerThread]
    supervisor: threading.Thread | None
    results: queue.Queue[Any] | None


class ImageWorkerPool:
    """Runs :class:`PoolTask` objects on up to ``worker_count`` threads."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_count: int = 4,
        idle_timeout_seconds: float = 30.0,
        shutdown_timeout_seconds: float = 5.0,
        max_task_restarts: int = 1,
        process: ProcessFn | None = None,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.max_workers = worker_count
        self.idle_timeout_seconds = idle_timeout_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.max_task_restarts = max_task_restarts
        self._process: ProcessFn = process or process_image
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._workers: dict[int, _WorkerThread] = {}
        self._queue: deque[_PoolJob] = deque()
        self._active: dict[int, _PoolJob] = {}
        self._next_job_id = 1
        self._generation = 0
        self._results: queue.Queue[Any] | None = None
        self._supervisor: threading.Thread | None = None
        self._idle_timer: threading.Timer | None = None
        self._idle_token = 0
        self._closed = False

    def __enter__(self) -> ImageWorkerPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    @property
    def closed(self) -> bool:
        return self._closed

    # -- public API --------------------------------------------------------------

    def process_image(self, task: PoolTask) -> Future[list[DerivativeResult]]:
        """Queue ``task``; the returned future settles when a worker finishes it."""

        future: Future[list[DerivativeResult]] = Future()
        with self._lock:
            if self._closed:
                raise PoolShutdownError("Pool is shut down")
            self._cancel_idle_timer_locked()
            if not self._workers:
                self._spawn_generation_locked()
            job = _PoolJob(job_id=self._next_job_id, task=task, future=future)
            self._next_job_id += 1
            self._queue.append(job)
            logger.debug("Pool job %d queued (queue=%d)", job.job_id, len(self._queue))
            self._dispatch_locked()
        return future

    def get_stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                worker_count=len(self._workers),
                busy_workers=sum(1 for worker in self._workers.values() if worker.busy),
                queue_length=len(self._queue),
                active_jobs=len(self._active),
            )

    def shutdown(self, timeout: float | None = None) -> None:
        """Reject queued work, wait for active work up to ``timeout``, stop threads."""

        wait_seconds = self.shutdown_timeout_seconds if timeout is None else timeout
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancel_idle_timer_locked()
            queued = list(self._queue)
            self._queue.clear()
            logger.info(
                "Image pool shutting down (active=%d queued=%d)",
                len(self._active),
                len(queued),
            )
        for job in queued:
            _settle(job.future, error=PoolShutdownError("Pool shutting down"))

        deadline = time.monotonic() + max(0.0, wait_seconds)
        with self._lock:
            while self._active:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._changed.wait(timeout=remaining)
            leftover = list(self._active.values())
            self._active.clear()
            generation = self._detach_generation_locked()
        for job in leftover:
            _settle(job.future, error=PoolShutdownError("Pool shutdown timeout"))
        _stop_generation(generation, join_timeout=0.5)
        logger.info("Image pool shut down")

    # -- internals (callers hold self._lock where the name says so) --------------

    def _spawn_generation_locked(self) -> None:
        self._generation += 1
        results: queue.Queue[Any] = queue.Queue()
        self._results = results
        for index in range(self.max_workers):
            self._start_worker_locked(index)
        self._supervisor = threading.Thread(
            target=self._supervise,
            args=(self._generation, results),
            daemon=True,
            name=f"image-pool-supervisor-{self._generation}",
        )
        self._supervisor.start()
        logger.info("Image pool started %d workers", self.max_workers)

    def _start_worker_locked(self, index: int) -> _WorkerThread:
        if self._results is None:
            raise RuntimeError("Image pool has no result channel.")
        worker = _WorkerThread(
            index=index,
            generation=self._generation,
            process=self._process,
            results=self._results,
        )
        self._workers[index] = worker
        worker.start()
        return worker

    def _detach_generation_locked(self) -> _Generation:
        generation = _Generation(
            workers=list(self._workers.values()),
            supervisor=self._supervisor,
            results=self._results,
        )
        self._generation += 1
        self._workers = {}
        self._supervisor = None
        self._results = None
        return generation

    def _dispatch_locked(self) -> None:
        while self._queue:
            worker = next((w for w in self._workers.values() if not w.busy), None)
            if worker is None:
                return
            job = self._queue.popleft()
            worker.busy = True
            job.worker_index = worker.index
            self._active[job.job_id] = job
            logger.debug(
                "Pool job %d started on worker %d after %.3fs",
                job.job_id,
                worker.index,
                time.monotonic() - job.queued_at,
            )
            worker.inbox.put((job.job_id, job.task))

    def _is_idle_locked(self) -> bool:
        return not self._active and not self._queue

    def _supervise(self, generation: int, results: queue.Queue[Any]) -> None:
        while True:
            message = results.get()
            if message is _STOP:
                return
            if isinstance(message, _Outcome):
                self._on_outcome(message)
            elif isinstance(message, _WorkerExit):
                self._on_worker_exit(message)
            else:
                logger.warning("Image pool %d got unexpected message %r", generation, message)

    def _on_outcome(self, outcome: _Outcome) -> None:
        with self._lock:
            if outcome.generation != self._generation:
                return
            job = self._active.pop(outcome.job_id, None)
            worker = self._workers.get(outcome.index)
            if worker is not None:
                worker.busy = False
            if not self._closed:
                self._dispatch_locked()
            idle = self._is_idle_locked() and not self._closed
            self._changed.notify_all()
        if job is None:
            logger.warning("Image pool got result for unknown job %d", outcome.job_id)
        elif outcome.error is not None:
            logger.debug("Pool job %d failed: %s", job.job_id, outcome.error)
            _settle(job.future, error=outcome.error)
        else:
            _settle(job.future, result=outcome.result or [])
        if idle:
            self._schedule_idle_teardown()

    def _on_worker_exit(self, exit_message: _WorkerExit) -> None:
        rejected: _PoolJob | None = None
        with self._lock:
            if exit_message.generation != self._generation:
                return
            self._workers.pop(exit_message.index, None)
            crashed = next(
                (job for job in self._active.values() if job.worker_index == exit_message.index),
                None,
            )
            logger.error(
                "Image worker %d died (%r) while running pool job %s",
                exit_message.index,
                exit_message.error,
                crashed.job_id if crashed is not None else None,
            )
            if crashed is not None:
                del self._active[crashed.job_id]
                crashed.worker_index = None
                if not self._closed and crashed.restarts < self.max_task_restarts:
                    crashed.restarts += 1
                    self._queue.appendleft(crashed)
                else:
                    rejected = crashed
            if not self._closed:
                self._start_worker_locked(exit_message.index)
                self._dispatch_locked()
            idle = self._is_idle_locked() and not self._closed
            self._changed.notify_all()
        if rejected is not None:
            _settle(
                rejected.future,
                error=PoolWorkerCrashedError(
                    f"Image worker crashed {rejected.restarts + 1} time(s) "
                    f"processing {rejected.task.source_path}",
                ),
            )
        if idle:
            self._schedule_idle_teardown()

    def _schedule_idle_teardown(self) -> None:
        with self._lock:
            if self._closed or not self._workers or not self._is_idle_locked():
                return
            self._cancel_idle_timer_locked()
            self._idle_token += 1
            timer = threading.Timer(
                self.idle_timeout_seconds,
                self._on_idle_timeout,
                args=(self._idle_token,),
            )
            timer.daemon = True
            self._idle_timer = timer
            timer.start()

    def _cancel_idle_timer_locked(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
        self._idle_token += 1

    def _on_idle_timeout(self, token: int) -> None:
        with self._lock:
            if token != self._idle_token or self._closed:
                return
            self._idle_timer = None
            if not self._workers or not self._is_idle_locked():
                return
            generation = self._detach_generation_locked()
        _stop_generation(generation, join_timeout=1.0)
        logger.info("Image pool idle for %.1fs; workers stopped", self.idle_timeout_seconds)


def _stop_generation(generation: _Generation, *, join_timeout: float) -> None:
    for worker in generation.workers:
        worker.inbox.put(None)
    if generation.results is not None:
        generation.results.put(_STOP)
    current = threading.current_thread()
    threads = [worker.thread for worker in generation.workers]
    if generation.supervisor is not None:
        threads.append(generation.supervisor)
    for thread in threads:
        if thread is not current and thread.is_alive():
            thread.join(timeout=join_timeout)


def _settle(
    future: Future[list[DerivativeResult]],
    *,
    result: list[DerivativeResult] | None = None,
    error: BaseException | None = None,
) -> None:
    if future.done():
        return
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result or [])
    except InvalidStateError:
        logger.debug("Pool future already settled")
