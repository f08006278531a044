"""CLI entrypoint for photo-jobs."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from photo_jobs import __version__
from photo_jobs.jobs.controllers import (
    CancelJobCommand,
    CancelProjectCommand,
    JobsCliController,
    ListJobsCommand,
    RecoverStaleCommand,
    TaskJobsCommand,
    TaskStartCommand,
    WorkerCommand,
)
from photo_jobs.jobs.models import JobStatus
from photo_jobs.storage.sqlmodel_models import DEFAULT_TENANT_ID

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for CLI processes."""

    resolved = (level or os.getenv("PHOTO_JOBS_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.WARNING), format=LOG_FORMAT)


@click.group()
@click.version_option(version=__version__, prog_name="photo-jobs")
@click.option(
    "--log-level",
    default=None,
    help="Logging level (defaults to PHOTO_JOBS_LOG_LEVEL or WARNING).",
)
def photo_jobs(log_level: str | None) -> None:
    """Photo job queue, task chains and derivative worker."""

    configure_logging(log_level)


@photo_jobs.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Drain claimable jobs and exit, or keep polling until interrupted.",
)
@click.option(
    "--handlers",
    "handler_factories",
    multiple=True,
    help="Extra handlers as `module:callable` returning {job_type: handler}. Can be repeated.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds.",
)
def worker(
    db_path: Path | None,
    once: bool,
    handler_factories: tuple[str, ...],
    max_seconds: float | None,
) -> None:
    """Run the scheduler with the registered job handlers."""

    _run(
        lambda: JOBS_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                handlers=handler_factories,
                max_seconds=max_seconds,
            ),
        ),
    )


@photo_jobs.group()
def task() -> None:
    """Task chain commands."""


@task.command("start")
@click.argument("task_type")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", type=int, default=None, help="Project the task belongs to.")
@click.option("--source", default="user", show_default=True, help="Who started the task.")
@click.option(
    "--item",
    "items",
    multiple=True,
    help="Item filename for the first job. Can be repeated.",
)
@click.option("--tenant-id", default=DEFAULT_TENANT_ID, show_default=True, help="Tenant id.")
def task_start(
    task_type: str,
    db_path: Path | None,
    project_id: int | None,
    source: str,
    items: tuple[str, ...],
    tenant_id: str,
) -> None:
    """Start a task by enqueuing its first step."""

    _run(
        lambda: JOBS_CONTROLLER.start_task(
            TaskStartCommand(
                db_path=db_path,
                task_type=task_type,
                project_id=project_id,
                source=source,
                items=items,
                tenant_id=tenant_id,
            ),
        ),
    )


@task.command("jobs")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def task_jobs(task_id: str, db_path: Path | None) -> None:
    """Show the jobs of one task in creation order."""

    _run(lambda: JOBS_CONTROLLER.task_jobs(TaskJobsCommand(db_path=db_path, task_id=task_id)))


@photo_jobs.group()
def jobs() -> None:
    """Job queue inspection and control."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", type=int, default=None, help="Filter by project.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Filter by status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum jobs to show.",
)
def jobs_list(
    db_path: Path | None,
    project_id: int | None,
    status: str | None,
    limit: int,
) -> None:
    """List recent jobs, newest first."""

    _run(
        lambda: JOBS_CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                project_id=project_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@jobs.command("cancel")
@click.argument("job_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_cancel(job_id: int, db_path: Path | None) -> None:
    """Cancel a queued or running job."""

    _run(lambda: JOBS_CONTROLLER.cancel_job(CancelJobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel-project")
@click.argument("project_id", type=int)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_cancel_project(project_id: int, db_path: Path | None) -> None:
    """Cancel every unfinished job of a project."""

    _run(
        lambda: JOBS_CONTROLLER.cancel_project(
            CancelProjectCommand(db_path=db_path, project_id=project_id),
        ),
    )


@jobs.command("recover-stale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stale-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Lease age after which a running job is requeued (defaults to settings).",
)
def jobs_recover_stale(db_path: Path | None, stale_seconds: float | None) -> None:
    """Requeue running jobs whose heartbeat expired."""

    _run(
        lambda: JOBS_CONTROLLER.recover_stale(
            RecoverStaleCommand(db_path=db_path, stale_seconds=stale_seconds),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    photo_jobs()
