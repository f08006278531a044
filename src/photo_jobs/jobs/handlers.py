"""Job handler contract and the registry mapping job types to handlers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from photo_jobs.jobs.models import JobView
from photo_jobs.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Every job type the application knows how to schedule."""

    GENERATE_DERIVATIVES = "generate_derivatives"
    UPLOAD_POSTPROCESS = "upload_postprocess"
    PROJECT_STOP_PROCESSES = "project_stop_processes"
    PROJECT_DELETE_FILES = "project_delete_files"
    PROJECT_CLEANUP_DB = "project_cleanup_db"
    TRASH_MAINTENANCE = "trash_maintenance"
    MANIFEST_CHECK = "manifest_check"
    FOLDER_CHECK = "folder_check"
    MANIFEST_CLEANING = "manifest_cleaning"
    PROJECT_SCAVENGE = "project_scavenge"
    FILE_REMOVAL = "file_removal"
    IMAGE_MOVE_FILES = "image_move_files"
    FOLDER_DISCOVERY = "folder_discovery"


class UnknownJobTypeError(LookupError):
    """Raised when a claimed job has no known type or no registered handler."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


@dataclass(slots=True)
class JobContext:
    """What a running handler may do besides its own work."""

    repository: JobRepository
    report_progress: Callable[[int, int | None], None]
    is_canceled: Callable[[], bool]


class JobHandler(Protocol):
    """Executes one claimed job; raising marks the attempt as failed."""

    def run(self, job: JobView, context: JobContext) -> None: ...


class HandlerRegistry:
    """Explicit type -> handler mapping, replacing a dispatch if-chain."""

    def __init__(self) -> None:
        self._handlers: dict[JobType, JobHandler] = {}

    def register(self, job_type: JobType | str, handler: JobHandler) -> None:
        self._handlers[JobType(job_type)] = handler

    def resolve(self, job_type: str) -> JobHandler:
        try:
            key = JobType(job_type)
        except ValueError as error:
            raise UnknownJobTypeError(job_type) from error
        handler = self._handlers.get(key)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def missing(self) -> list[JobType]:
        """Known job types with no handler; jobs of these types fail at claim."""

        return [job_type for job_type in JobType if job_type not in self._handlers]

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)


class FunctionHandler:
    """Adapter turning a plain ``fn(job, context)`` callable into a handler."""

    def __init__(self, fn: Callable[[JobView, JobContext], None]) -> None:
        self._fn = fn

    def run(self, job: JobView, context: JobContext) -> None:
        self._fn(job, context)
