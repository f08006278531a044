"""Controllers for job engine CLI commands."""

from __future__ import annotations

import importlib
import signal
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from photo_jobs.config import Settings
from photo_jobs.jobs.engine import JobEngine
from photo_jobs.jobs.handlers import JobHandler, JobType
from photo_jobs.jobs.models import JobStatus, JobView
from photo_jobs.jobs.repository import JobRepository
from photo_jobs.jobs.tasks import TaskOrchestrator, load_task_definitions


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    handlers: tuple[str, ...] = ()
    max_seconds: float | None = None


@dataclass(slots=True)
class TaskStartCommand:
    """CLI input for starting a task chain."""

    db_path: Path | None
    task_type: str
    project_id: int | None
    source: str
    items: tuple[str, ...]
    tenant_id: str


@dataclass(slots=True)
class TaskJobsCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    project_id: int | None
    status: str | None
    limit: int


@dataclass(slots=True)
class CancelJobCommand:
    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class CancelProjectCommand:
    db_path: Path | None
    project_id: int


@dataclass(slots=True)
class RecoverStaleCommand:
    db_path: Path | None
    stale_seconds: float | None


class JobsCliController:
    """Coordinates worker, task and inspection CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        handlers = _load_handler_factories(command.handlers)
        engine = JobEngine.from_settings(settings, handlers=handlers)
        try:
            missing = [job_type.value for job_type in engine.registry.missing()]
            if command.once:
                processed = engine.scheduler.run_until_idle(max_seconds=command.max_seconds)
            else:
                stop = threading.Event()
                with _signal_handlers(stop):
                    engine.start()
                    stop.wait(timeout=command.max_seconds)
                processed = engine.scheduler.processed
        finally:
            engine.stop(timeout=settings.image_pool.shutdown_timeout_seconds)

        lines = [f"Worker summary: processed={processed}"]
        if missing:
            lines.append(f"Job types without handler: {', '.join(missing)}")
        return lines

    def start_task(self, command: TaskStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            orchestrator = TaskOrchestrator(
                repository,
                load_task_definitions(settings.task_definitions_path),
            )
            result = orchestrator.start_task(
                command.task_type,
                project_id=command.project_id,
                source=command.source,
                items=list(command.items) or None,
                tenant_id=command.tenant_id,
            )
        first_job = result.first_job_id if result.first_job_id is not None else "-"
        return [f"Task started: task_id={result.task_id} type={result.type} first_job={first_job}"]

    def task_jobs(self, command: TaskJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.list_jobs_by_task_id(task_id=command.task_id)
        if not jobs:
            return [f"No jobs for task: {command.task_id}"]
        lines = [f"Task {command.task_id}: {len(jobs)} jobs"]
        lines.extend(_render_job(job) for job in jobs)
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                project_id=command.project_id,
                status=status_filter,
                limit=command.limit,
            )
            counts = repository.count_by_status()

        lines = [
            f"Jobs: {len(jobs)} "
            + " ".join(f"{status.value}={count}" for status, count in counts.items()),
        ]
        lines.extend(_render_job(job) for job in jobs)
        return lines

    def cancel_job(self, command: CancelJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            changed = repository.cancel(job_id=command.job_id)
        if not changed:
            return [f"Job not cancelable (missing or already finished): {command.job_id}"]
        return [f"Job canceled: {command.job_id}"]

    def cancel_project(self, command: CancelProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            count = repository.cancel_by_project(project_id=command.project_id)
        return [f"Canceled {count} jobs of project {command.project_id}"]

    def recover_stale(self, command: RecoverStaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_seconds = (
            command.stale_seconds
            if command.stale_seconds is not None
            else settings.pipeline.stale_seconds
        )
        with _repository(settings) as repository:
            requeued = repository.requeue_stale_running(stale_seconds=stale_seconds)
        if not requeued:
            return ["No stale running jobs."]
        return [f"Requeued stale jobs: {', '.join(str(job_id) for job_id in requeued)}"]


def _render_job(job: JobView) -> str:
    progress = (
        f" progress={job.progress_done or 0}/{job.progress_total}"
        if job.progress_total is not None
        else ""
    )
    attempts = f"{job.attempts}/{job.max_attempts}" if job.max_attempts else str(job.attempts)
    line = (
        f"  {job.id} type={job.type} status={job.status.value} priority={job.priority} "
        f"attempts={attempts}{progress}"
    )
    if job.task_id:
        line += f" task={job.task_id}"
    if job.error_message:
        line += f" error={job.error_message!r}"
    return line


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in JobStatus)
        raise ValueError(f"Unsupported job status: {value!r}. Use one of: {allowed}") from error


def _load_handler_factories(specs: tuple[str, ...]) -> dict[JobType | str, JobHandler]:
    """Import ``module:callable`` factories returning ``{job_type: handler}``."""

    handlers: dict[JobType | str, JobHandler] = {}
    for spec in specs:
        module_name, sep, attr = spec.partition(":")
        if not sep or not module_name or not attr:
            raise ValueError(f"Invalid handler factory {spec!r}. Expected 'module:callable'.")
        factory = getattr(importlib.import_module(module_name), attr)
        produced = factory()
        if not isinstance(produced, Mapping):
            raise ValueError(f"Handler factory {spec!r} must return a mapping of job type to handler.")
        handlers.update(produced)
    return handlers


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _signal_handlers(stop: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        # Signal handlers can only be installed in main thread.
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(_signum: int, _frame: object | None) -> None:
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
