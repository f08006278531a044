"""Runtime configuration for the job engine and image pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class PipelineSettings:
    """Scheduler and lease settings."""

    poll_interval_seconds: float = 0.5
    heartbeat_seconds: float = 1.0
    stale_seconds: float = 60.0
    max_attempts_default: int = 3
    priority_threshold: int = 90
    priority_lane_slots: int = 1
    max_parallel_jobs: int = 2
    worker_id: str = "photo-jobs-worker"

    @property
    def total_slots(self) -> int:
        return max(1, self.max_parallel_jobs)

    @property
    def priority_slots(self) -> int:
        return max(0, self.priority_lane_slots)

    @property
    def normal_slots(self) -> int:
        return max(0, self.total_slots - self.priority_slots)

    def sanity_warnings(self) -> list[str]:
        """Describe configurations the scheduler clamps or that starve a lane."""

        warnings: list[str] = []
        if self.max_parallel_jobs < 1:
            warnings.append(
                f"max_parallel_jobs={self.max_parallel_jobs} clamped to {self.total_slots}.",
            )
        if self.priority_lane_slots < 0:
            warnings.append(
                f"priority_lane_slots={self.priority_lane_slots} clamped to 0.",
            )
        if self.priority_slots >= self.total_slots:
            warnings.append(
                "priority_lane_slots >= max_parallel_jobs: the normal lane has no slots "
                f"and jobs below priority {self.priority_threshold} will never run.",
            )
        if self.priority_slots == 0:
            warnings.append(
                f"priority_lane_slots=0: jobs at or above priority {self.priority_threshold} "
                "will never run.",
            )
        return warnings


@dataclass(slots=True)
class ImagePoolSettings:
    """Image worker pool settings."""

    worker_count: int = 4
    idle_timeout_seconds: float = 30.0
    shutdown_timeout_seconds: float = 5.0
    max_task_restarts: int = 1


@dataclass(slots=True)
class ProcessingSettings:
    """Derivative sizes and JPEG qualities."""

    thumbnail_max_width: int = 200
    thumbnail_max_height: int = 200
    thumbnail_quality: int = 80
    preview_max_width: int = 6000
    preview_max_height: int = 6000
    preview_quality: int = 80


@dataclass(slots=True)
class MaintenanceSettings:
    """Periodic maintenance triggers."""

    enabled: bool = False
    maintenance_interval_seconds: float = 3_600.0
    scavenge_interval_seconds: float = 3_600.0
    folder_discovery_interval_seconds: float = 300.0
    initial_delay_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".photo_jobs.db")
    projects_root: Path = Path(".projects")
    task_definitions_path: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    image_pool: ImagePoolSettings = field(default_factory=ImagePoolSettings)
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    maintenance: MaintenanceSettings = field(default_factory=MaintenanceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        definitions_raw = os.getenv("PHOTO_JOBS_TASK_DEFINITIONS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("PHOTO_JOBS_DB_PATH", ".photo_jobs.db")),
            projects_root=Path(os.getenv("PHOTO_JOBS_PROJECTS_ROOT", ".projects")),
            task_definitions_path=Path(definitions_raw) if definitions_raw else None,
            sqlite_busy_timeout_ms=int(os.getenv("PHOTO_JOBS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            pipeline=PipelineSettings(
                poll_interval_seconds=float(os.getenv("PHOTO_JOBS_POLL_INTERVAL_SECONDS", "0.5")),
                heartbeat_seconds=float(os.getenv("PHOTO_JOBS_HEARTBEAT_SECONDS", "1.0")),
                stale_seconds=float(os.getenv("PHOTO_JOBS_STALE_SECONDS", "60")),
                max_attempts_default=int(os.getenv("PHOTO_JOBS_MAX_ATTEMPTS", "3")),
                priority_threshold=int(os.getenv("PHOTO_JOBS_PRIORITY_THRESHOLD", "90")),
                priority_lane_slots=int(os.getenv("PHOTO_JOBS_PRIORITY_LANE_SLOTS", "1")),
                max_parallel_jobs=int(os.getenv("PHOTO_JOBS_MAX_PARALLEL_JOBS", "2")),
                worker_id=os.getenv("PHOTO_JOBS_WORKER_ID", f"photo-jobs-worker-{os.getpid()}"),
            ),
            image_pool=ImagePoolSettings(
                worker_count=int(os.getenv("PHOTO_JOBS_IMAGE_WORKERS", "4")),
                idle_timeout_seconds=float(
                    os.getenv("PHOTO_JOBS_IMAGE_POOL_IDLE_TIMEOUT_SECONDS", "30"),
                ),
                shutdown_timeout_seconds=float(
                    os.getenv("PHOTO_JOBS_IMAGE_POOL_SHUTDOWN_TIMEOUT_SECONDS", "5"),
                ),
                max_task_restarts=int(os.getenv("PHOTO_JOBS_IMAGE_POOL_MAX_TASK_RESTARTS", "1")),
            ),
            processing=ProcessingSettings(
                thumbnail_max_width=int(os.getenv("PHOTO_JOBS_THUMBNAIL_MAX_WIDTH", "200")),
                thumbnail_max_height=int(os.getenv("PHOTO_JOBS_THUMBNAIL_MAX_HEIGHT", "200")),
                thumbnail_quality=int(os.getenv("PHOTO_JOBS_THUMBNAIL_QUALITY", "80")),
                preview_max_width=int(os.getenv("PHOTO_JOBS_PREVIEW_MAX_WIDTH", "6000")),
                preview_max_height=int(os.getenv("PHOTO_JOBS_PREVIEW_MAX_HEIGHT", "6000")),
                preview_quality=int(os.getenv("PHOTO_JOBS_PREVIEW_QUALITY", "80")),
            ),
            maintenance=MaintenanceSettings(
                enabled=_env_bool("PHOTO_JOBS_MAINTENANCE_ENABLED", default=False),
                maintenance_interval_seconds=float(
                    os.getenv("PHOTO_JOBS_MAINTENANCE_INTERVAL_SECONDS", "3600"),
                ),
                scavenge_interval_seconds=float(
                    os.getenv("PHOTO_JOBS_SCAVENGE_INTERVAL_SECONDS", "3600"),
                ),
                folder_discovery_interval_seconds=float(
                    os.getenv("PHOTO_JOBS_FOLDER_DISCOVERY_INTERVAL_SECONDS", "300"),
                ),
                initial_delay_seconds=float(
                    os.getenv("PHOTO_JOBS_MAINTENANCE_INITIAL_DELAY_SECONDS", "5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        pipeline = self.pipeline
        if pipeline.poll_interval_seconds <= 0:
            raise ValueError("PHOTO_JOBS_POLL_INTERVAL_SECONDS must be > 0.")
        if pipeline.heartbeat_seconds <= 0:
            raise ValueError("PHOTO_JOBS_HEARTBEAT_SECONDS must be > 0.")
        if pipeline.stale_seconds <= pipeline.heartbeat_seconds:
            raise ValueError(
                "PHOTO_JOBS_STALE_SECONDS must be greater than PHOTO_JOBS_HEARTBEAT_SECONDS, "
                "otherwise healthy running jobs are requeued as stale.",
            )
        if pipeline.max_attempts_default < 1:
            raise ValueError("PHOTO_JOBS_MAX_ATTEMPTS must be >= 1.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("PHOTO_JOBS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")

        pool = self.image_pool
        if pool.worker_count < 1:
            raise ValueError("PHOTO_JOBS_IMAGE_WORKERS must be >= 1.")
        if pool.idle_timeout_seconds <= 0:
            raise ValueError("PHOTO_JOBS_IMAGE_POOL_IDLE_TIMEOUT_SECONDS must be > 0.")
        if pool.shutdown_timeout_seconds < 0:
            raise ValueError("PHOTO_JOBS_IMAGE_POOL_SHUTDOWN_TIMEOUT_SECONDS must be >= 0.")
        if pool.max_task_restarts < 0:
            raise ValueError("PHOTO_JOBS_IMAGE_POOL_MAX_TASK_RESTARTS must be >= 0.")

        processing = self.processing
        for name, value in (
            ("PHOTO_JOBS_THUMBNAIL_QUALITY", processing.thumbnail_quality),
            ("PHOTO_JOBS_PREVIEW_QUALITY", processing.preview_quality),
        ):
            if not 1 <= value <= 100:
                raise ValueError(f"{name} must be within 1..100, got {value}.")
        for name, value in (
            ("PHOTO_JOBS_THUMBNAIL_MAX_WIDTH", processing.thumbnail_max_width),
            ("PHOTO_JOBS_THUMBNAIL_MAX_HEIGHT", processing.thumbnail_max_height),
            ("PHOTO_JOBS_PREVIEW_MAX_WIDTH", processing.preview_max_width),
            ("PHOTO_JOBS_PREVIEW_MAX_HEIGHT", processing.preview_max_height),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

        if self.maintenance.enabled and (
            self.maintenance.maintenance_interval_seconds <= 0
            or self.maintenance.scavenge_interval_seconds <= 0
            or self.maintenance.folder_discovery_interval_seconds <= 0
        ):
            raise ValueError("Maintenance intervals must be > 0 when maintenance is enabled.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
