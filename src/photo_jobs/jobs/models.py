"""Domain models for the job queue, task chains and status events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from photo_jobs.storage.sqlmodel_models import DEFAULT_TENANT_ID


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})


class JobItemStatus(str, Enum):
    """Per-item states inside a batch job."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class Lane(str, Enum):
    """Admission-control lanes of the scheduler."""

    PRIORITY = "priority"
    NORMAL = "normal"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    type: str
    tenant_id: str = DEFAULT_TENANT_ID
    project_id: int | None = None
    payload: dict[str, Any] | None = None
    priority: int = 0
    progress_total: int | None = None


@dataclass(slots=True)
class JobItemCreate:
    """One batch entry created together with its job."""

    filename: str | None = None
    photo_id: int | None = None
    status: JobItemStatus = JobItemStatus.PENDING


@dataclass(slots=True)
class JobView:
    """Readable job view for scheduler, handlers and CLI."""

    id: int
    tenant_id: str
    project_id: int | None
    type: str
    status: JobStatus
    priority: int
    payload: dict[str, Any]
    attempts: int
    max_attempts: int | None
    claimed_by: str | None
    heartbeat_at: datetime | None
    progress_done: int | None
    progress_total: int | None
    error_message: str | None
    started_at: datetime | None
    finished_at: datetime | None
    last_error_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def task_id(self) -> str | None:
        value = self.payload.get("task_id")
        return value if isinstance(value, str) else None

    @property
    def task_type(self) -> str | None:
        value = self.payload.get("task_type")
        return value if isinstance(value, str) else None

    @property
    def source(self) -> str | None:
        value = self.payload.get("source")
        return value if isinstance(value, str) else None


@dataclass(slots=True)
class JobItemView:
    """Stored batch entry."""

    id: int
    job_id: int
    tenant_id: str
    photo_id: int | None
    filename: str | None
    status: JobItemStatus
    message: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def reference(self) -> str:
        if self.filename:
            return self.filename
        return str(self.photo_id) if self.photo_id is not None else ""


@dataclass(slots=True)
class StatusEvent:
    """Status change pushed to the outbound event sink."""

    job_id: int
    status: JobStatus
    task_id: str | None = None
    task_type: str | None = None
    source: str | None = None
    progress_done: int | None = None
    progress_total: int | None = None

    @classmethod
    def for_job(
        cls,
        job: JobView,
        status: JobStatus,
        *,
        progress_done: int | None = None,
        progress_total: int | None = None,
    ) -> StatusEvent:
        return cls(
            job_id=job.id,
            status=status,
            task_id=job.task_id,
            task_type=job.task_type,
            source=job.source,
            progress_done=progress_done,
            progress_total=progress_total,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "source": self.source,
            "progress_done": self.progress_done,
            "progress_total": self.progress_total,
        }


@dataclass(frozen=True, slots=True)
class TaskStep:
    """One step of a linear task chain."""

    type: str
    priority: int = 0
    skip_flag: str | None = None


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    """Named ordered list of steps, loaded once from configuration."""

    name: str
    steps: tuple[TaskStep, ...] = field(default_factory=tuple)

    def index_of(self, job_type: str) -> int | None:
        for index, step in enumerate(self.steps):
            if step.type == job_type:
                return index
        return None


@dataclass(slots=True)
class TaskStartResult:
    """Correlation handle returned to the caller starting a task."""

    task_id: str
    type: str
    first_job_id: int | None = None
