"""Linear task chains built on top of the job queue.

A task is never stored. Starting one enqueues its first step with a fresh
``task_id`` in the payload; every completed job carrying that id enqueues the
next step of the same definition. Failure, cancellation or a missing next step
ends the chain.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from functools import lru_cache
from pathlib import Path
from typing import Any

from photo_jobs.jobs.models import (
    JobCreate,
    JobItemCreate,
    JobView,
    TaskDefinition,
    TaskStartResult,
    TaskStep,
)
from photo_jobs.jobs.repository import JobRepository
from photo_jobs.storage.sqlmodel_models import DEFAULT_TENANT_ID

logger = logging.getLogger(__name__)

DEFAULT_DEFINITIONS_PATH = Path(__file__).resolve().parent / "task_definitions.json"

TaskItem = str | Mapping[str, Any]


class UnknownTaskTypeError(ValueError):
    """Raised when starting a task type with no definition."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type: {task_type}")
        self.task_type = task_type


def load_task_definitions(path: Path | None = None) -> dict[str, TaskDefinition]:
    """Load definitions once per file; later calls return the cached mapping."""

    return _load_task_definitions_cached((path or DEFAULT_DEFINITIONS_PATH).resolve())


@lru_cache(maxsize=8)
def _load_task_definitions_cached(path: Path) -> dict[str, TaskDefinition]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Task definitions must be a JSON object: {path}")
    definitions = {name: parse_task_definition(name, body) for name, body in raw.items()}
    logger.debug("Loaded %d task definitions from %s", len(definitions), path)
    return definitions


def parse_task_definition(name: str, body: Any) -> TaskDefinition:
    if not isinstance(body, dict):
        raise ValueError(f"Task definition {name!r} must be an object.")
    steps_raw = body.get("steps") or []
    if not isinstance(steps_raw, list):
        raise ValueError(f"Task definition {name!r} has non-list steps.")
    steps: list[TaskStep] = []
    for step in steps_raw:
        if not isinstance(step, dict) or not isinstance(step.get("type"), str):
            raise ValueError(f"Task definition {name!r} has a step without a type: {step!r}")
        skip_flag = step.get("skip_flag")
        steps.append(
            TaskStep(
                type=step["type"],
                priority=int(step.get("priority") or 0),
                skip_flag=skip_flag if isinstance(skip_flag, str) else None,
            ),
        )
    return TaskDefinition(name=name, steps=tuple(steps))


class TaskOrchestrator:
    """Starts tasks and advances them as their jobs complete."""

    def __init__(
        self,
        repository: JobRepository,
        definitions: Mapping[str, TaskDefinition] | None = None,
    ) -> None:
        self.repository = repository
        self.definitions = dict(definitions) if definitions is not None else load_task_definitions()

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
        definition = self.definitions.get(task_type)
        if definition is None:
            raise UnknownTaskTypeError(task_type)

        task_id = str(uuid.uuid4())
        if not definition.steps:
            logger.info("Task %s (%s) has no steps; nothing enqueued", task_id, task_type)
            return TaskStartResult(task_id=task_id, type=task_type)

        first = definition.steps[0]
        job_payload = {
            **dict(payload or {}),
            "task_id": task_id,
            "task_type": task_type,
            "source": source,
        }
        create = JobCreate(
            type=first.type,
            tenant_id=tenant_id,
            project_id=project_id,
            payload=job_payload,
            priority=first.priority,
        )
        normalized = normalize_items(items)
        if normalized:
            job = self.repository.enqueue_with_items(create, normalized)
        else:
            job = self.repository.enqueue(create)
        logger.info(
            "Started task %s (%s): first job %s type=%s priority=%s",
            task_id,
            task_type,
            job.id,
            job.type,
            job.priority,
        )
        return TaskStartResult(task_id=task_id, type=task_type, first_job_id=job.id)

    def on_job_completed(self, job: JobView) -> JobView | None:
        """Enqueue the next step of the job's task, if there is one."""

        task_id = job.task_id
        task_type = job.task_type
        if not task_id or not task_type:
            return None
        definition = self.definitions.get(task_type)
        if definition is None or not definition.steps:
            return None
        index = definition.index_of(job.type)
        if index is None:
            return None

        next_step = _step_at(definition, index + 1)
        if next_step is not None and _is_skipped(next_step, job.payload):
            logger.info("Task %s: skipping step %s", task_id, next_step.type)
            next_step = _step_at(definition, index + 2)
        if next_step is None:
            logger.info("Task %s (%s) finished", task_id, task_type)
            return None

        next_job = self.repository.enqueue(
            JobCreate(
                type=next_step.type,
                tenant_id=job.tenant_id,
                project_id=job.project_id,
                payload=dict(job.payload),
                priority=next_step.priority,
            ),
        )
        logger.info(
            "Task %s: enqueued step %s as job %s",
            task_id,
            next_step.type,
            next_job.id,
        )
        return next_job

    def list_task_jobs(self, task_id: str) -> list[JobView]:
        return self.repository.list_jobs_by_task_id(task_id=task_id)


def normalize_items(items: Sequence[TaskItem] | None) -> list[JobItemCreate]:
    """Turn bare filenames and item mappings into item rows."""

    if not items:
        return []
    normalized: list[JobItemCreate] = []
    for entry in items:
        if isinstance(entry, str):
            normalized.append(JobItemCreate(filename=entry))
            continue
        photo_id = entry.get("photo_id")
        filename = entry.get("filename")
        normalized.append(
            JobItemCreate(
                filename=str(filename) if filename is not None else None,
                photo_id=int(photo_id) if photo_id is not None else None,
            ),
        )
    return normalized


def _step_at(definition: TaskDefinition, index: int) -> TaskStep | None:
    if index >= len(definition.steps):
        return None
    return definition.steps[index]


def _is_skipped(step: TaskStep, payload: Mapping[str, Any]) -> bool:
    return step.skip_flag is not None and payload.get(step.skip_flag) is False
