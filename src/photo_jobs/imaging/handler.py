"""Job handler generating thumbnails and previews for a project's images."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from photo_jobs.config import ProcessingSettings
from photo_jobs.imaging.derivatives import DerivativeResult, DerivativeSpec, PoolTask
from photo_jobs.imaging.pool import ImageWorkerPool, PoolShutdownError
from photo_jobs.jobs.handlers import JobContext
from photo_jobs.jobs.models import JobItemCreate, JobItemStatus, JobItemView, JobView

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".tiff", ".webp")
THUMBNAIL_DIR = ".thumb"
PREVIEW_DIR = ".preview"

ProjectDirResolver = Callable[[JobView], Path]


def default_project_dir_resolver(projects_root: Path) -> ProjectDirResolver:
    """Resolve ``projects_root / project_folder``, falling back to the project id."""

    def resolve(job: JobView) -> Path:
        folder = job.payload.get("project_folder")
        if isinstance(folder, str) and folder:
            return projects_root / folder
        if job.project_id is not None:
            return projects_root / str(job.project_id)
        raise ValueError(f"Job {job.id} has no project folder or project id")

    return resolve


def find_source_file(project_dir: Path, filename: str) -> Path | None:
    """Locate the original for ``filename`` among supported extensions, any case."""

    direct = project_dir / filename
    if direct.suffix.lower() in SUPPORTED_EXTENSIONS and direct.is_file():
        return direct
    for extension in SUPPORTED_EXTENSIONS:
        for variant in (extension, extension.upper()):
            candidate = project_dir / f"{filename}{variant}"
            if candidate.is_file():
                return candidate
    return None


class GenerateDerivativesHandler:
    """Processes a job's items one by one through the image worker pool."""

    def __init__(
        self,
        *,
        pool: ImageWorkerPool,
        settings: ProcessingSettings,
        project_dir_resolver: ProjectDirResolver,
    ) -> None:
        self.pool = pool
        self.settings = settings
        self.project_dir_resolver = project_dir_resolver

    def run(self, job: JobView, context: JobContext) -> None:
        project_dir = self.project_dir_resolver(job)
        items = self._ensure_items(job, context)
        total = len(items)
        done = sum(1 for item in items if item.status != JobItemStatus.PENDING)
        context.report_progress(done, total)

        for item in items:
            if context.is_canceled():
                logger.info("Job %s canceled; stopping after %d/%d items", job.id, done, total)
                return
            if item.status != JobItemStatus.PENDING:
                continue
            context.repository.update_item_status(item_id=item.id, status=JobItemStatus.RUNNING)
            status, message = self._process_item(project_dir, item)
            context.repository.update_item_status(item_id=item.id, status=status, message=message)
            done += 1
            context.report_progress(done, total)

    def _ensure_items(self, job: JobView, context: JobContext) -> list[JobItemView]:
        items = context.repository.list_items(job_id=job.id)
        if items:
            return items
        filenames = job.payload.get("filenames")
        if not isinstance(filenames, list) or not filenames:
            return []
        return context.repository.add_items(
            job_id=job.id,
            items=[JobItemCreate(filename=str(name)) for name in filenames],
        )

    def _process_item(self, project_dir: Path, item: JobItemView) -> tuple[JobItemStatus, str | None]:
        name = item.reference
        source = find_source_file(project_dir, name) if name else None
        if source is None:
            return JobItemStatus.SKIPPED, "no supported source"

        base = source.stem if Path(name).suffix.lower() in SUPPORTED_EXTENSIONS else name
        task = PoolTask(source_path=source, derivatives=self.derivative_specs(project_dir, base))
        try:
            results = self.pool.process_image(task).result()
        except PoolShutdownError:
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Derivatives for %s failed: %s", source, error)
            return JobItemStatus.FAILED, str(error) or error.__class__.__name__

        errors = _errors(results)
        if errors:
            return JobItemStatus.FAILED, errors
        return JobItemStatus.DONE, None

    def derivative_specs(self, project_dir: Path, base: str) -> tuple[DerivativeSpec, ...]:
        settings = self.settings
        return (
            DerivativeSpec(
                type="thumbnail",
                width=settings.thumbnail_max_width,
                height=settings.thumbnail_max_height,
                quality=settings.thumbnail_quality,
                output_path=project_dir / THUMBNAIL_DIR / f"{base}.jpg",
            ),
            DerivativeSpec(
                type="preview",
                width=settings.preview_max_width,
                height=settings.preview_max_height,
                quality=settings.preview_quality,
                output_path=project_dir / PREVIEW_DIR / f"{base}.jpg",
            ),
        )


def _errors(results: list[DerivativeResult]) -> str | None:
    messages = [f"{result.type}: {result.error}" for result in results if result.error]
    return "; ".join(messages) if messages else None
