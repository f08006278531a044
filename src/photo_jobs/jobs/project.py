"""Filesystem-only steps of the project deletion task."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from photo_jobs.imaging.handler import ProjectDirResolver
from photo_jobs.jobs.handlers import JobContext
from photo_jobs.jobs.models import JobView

logger = logging.getLogger(__name__)


class ProjectStopProcessesHandler:
    """Cancels every other queued or running job of the project."""

    def run(self, job: JobView, context: JobContext) -> None:
        if job.project_id is None:
            logger.warning("Job %s has no project; nothing to stop", job.id)
            return
        canceled = context.repository.cancel_by_project(
            project_id=job.project_id,
            exclude_job_id=job.id,
        )
        logger.info("Project %s: canceled %d related jobs", job.project_id, canceled)


class ProjectDeleteFilesHandler:
    """Removes the project directory; errors propagate so the step is retried."""

    def __init__(self, *, project_dir_resolver: ProjectDirResolver, projects_root: Path) -> None:
        self.project_dir_resolver = project_dir_resolver
        self.projects_root = projects_root

    def run(self, job: JobView, context: JobContext) -> None:
        project_dir = self.project_dir_resolver(job).resolve()
        root = self.projects_root.resolve()
        if project_dir == root or root not in project_dir.parents:
            raise ValueError(f"Refusing to delete {project_dir}: not inside {root}")
        if not project_dir.exists():
            logger.info("Project directory %s already gone", project_dir)
            return
        logger.info("Removing project directory %s", project_dir)
        shutil.rmtree(project_dir)
