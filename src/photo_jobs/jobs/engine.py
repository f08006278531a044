"""Explicit lifecycle object wiring store, scheduler, tasks and image pool."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from photo_jobs.config import Settings
from photo_jobs.imaging.handler import GenerateDerivativesHandler, default_project_dir_resolver
from photo_jobs.imaging.pool import ImageWorkerPool
from photo_jobs.jobs.events import LoggingEventSink, StatusEventSink
from photo_jobs.jobs.handlers import HandlerRegistry, JobHandler, JobType
from photo_jobs.jobs.models import JobView, TaskStartResult
from photo_jobs.jobs.periodic import PeriodicTask, PeriodicTaskTrigger, default_periodic_tasks
from photo_jobs.jobs.project import ProjectDeleteFilesHandler, ProjectStopProcessesHandler
from photo_jobs.jobs.repository import JobRepository
from photo_jobs.jobs.scheduler import JobScheduler
from photo_jobs.jobs.tasks import TaskItem, TaskOrchestrator, load_task_definitions
from photo_jobs.storage.sqlmodel_models import DEFAULT_TENANT_ID

logger = logging.getLogger(__name__)


class JobEngine:
    """Owns every long-lived component; nothing is a module-level singleton."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        orchestrator: TaskOrchestrator,
        scheduler: JobScheduler,
        pool: ImageWorkerPool | None = None,
        periodic: PeriodicTaskTrigger | None = None,
        event_sink: StatusEventSink | None = None,
        pool_shutdown_timeout_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.pool = pool
        self.periodic = periodic
        self.event_sink = event_sink or scheduler.event_sink
        self.pool_shutdown_timeout_seconds = pool_shutdown_timeout_seconds
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        handlers: Mapping[JobType | str, JobHandler] | None = None,
        event_sink: StatusEventSink | None = None,
        init_schema: bool = True,
    ) -> JobEngine:
        """Default wiring: derivatives and project handlers plus any extra ones."""

        settings.validate()
        repository = JobRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        if init_schema:
            repository.init_schema()
        sink = event_sink or LoggingEventSink()
        pool = ImageWorkerPool(
            worker_count=settings.image_pool.worker_count,
            idle_timeout_seconds=settings.image_pool.idle_timeout_seconds,
            shutdown_timeout_seconds=settings.image_pool.shutdown_timeout_seconds,
            max_task_restarts=settings.image_pool.max_task_restarts,
        )
        resolver = default_project_dir_resolver(settings.projects_root)
        derivatives = GenerateDerivativesHandler(
            pool=pool,
            settings=settings.processing,
            project_dir_resolver=resolver,
        )

        registry = HandlerRegistry()
        registry.register(JobType.GENERATE_DERIVATIVES, derivatives)
        registry.register(JobType.UPLOAD_POSTPROCESS, derivatives)
        registry.register(JobType.PROJECT_STOP_PROCESSES, ProjectStopProcessesHandler())
        registry.register(
            JobType.PROJECT_DELETE_FILES,
            ProjectDeleteFilesHandler(
                project_dir_resolver=resolver,
                projects_root=settings.projects_root,
            ),
        )
        for job_type, handler in (handlers or {}).items():
            registry.register(job_type, handler)

        orchestrator = TaskOrchestrator(
            repository,
            load_task_definitions(settings.task_definitions_path),
        )
        scheduler = JobScheduler(
            repository=repository,
            registry=registry,
            orchestrator=orchestrator,
            settings=settings.pipeline,
            event_sink=sink,
        )
        periodic = None
        if settings.maintenance.enabled:
            tasks = _runnable_periodic_tasks(
                default_periodic_tasks(settings.maintenance),
                orchestrator=orchestrator,
                registry=registry,
            )
            if tasks:
                periodic = PeriodicTaskTrigger(
                    orchestrator=orchestrator,
                    tasks=tasks,
                    initial_delay_seconds=settings.maintenance.initial_delay_seconds,
                )
        return cls(
            repository=repository,
            registry=registry,
            orchestrator=orchestrator,
            scheduler=scheduler,
            pool=pool,
            periodic=periodic,
            event_sink=sink,
            pool_shutdown_timeout_seconds=settings.image_pool.shutdown_timeout_seconds,
        )

    def __enter__(self) -> JobEngine:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def start(self) -> None:
        if self._started:
            return
        self.scheduler.start()
        if self.periodic is not None:
            self.periodic.start()
        self._started = True
        logger.info("Job engine started")

    def stop(self, timeout: float | None = None) -> None:
        """Stop triggers, then the scheduler, then the pool; close the store last."""

        if self.periodic is not None:
            self.periodic.stop()
        self.scheduler.stop(timeout=timeout)
        if self.pool is not None:
            self.pool.shutdown(timeout=self.pool_shutdown_timeout_seconds)
        self.repository.close()
        self._started = False
        logger.info("Job engine stopped")

    def start_task(
        self,
        task_type: str,
        *,
        project_id: int | None = None,
        source: str = "user",
        items: Sequence[TaskItem] | None = None,
        tenant_id: str = DEFAULT_TENANT_ID,
        payload: Mapping[str, Any] | None = None,
    ) -> TaskStartResult:
        result = self.orchestrator.start_task(
            task_type,
            project_id=project_id,
            source=source,
            items=items,
            tenant_id=tenant_id,
            payload=payload,
        )
        self.scheduler.wake()
        return result

    def list_jobs_by_task_id(self, task_id: str) -> list[JobView]:
        return self.orchestrator.list_task_jobs(task_id)


def _runnable_periodic_tasks(
    tasks: Sequence[PeriodicTask],
    *,
    orchestrator: TaskOrchestrator,
    registry: HandlerRegistry,
) -> list[PeriodicTask]:
    """Drop periodic tasks whose first step nothing in this process can run."""

    runnable: list[PeriodicTask] = []
    for task in tasks:
        definition = orchestrator.definitions.get(task.task_type)
        first_step = definition.steps[0].type if definition and definition.steps else None
        if first_step is None or first_step not in registry:
            logger.warning(
                "Skipping periodic task %s: no handler for first step %s",
                task.task_type,
                first_step,
            )
            continue
        runnable.append(task)
    return runnable
