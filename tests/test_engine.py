from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from photo_jobs.config import MaintenanceSettings, PipelineSettings, Settings
from photo_jobs.imaging.handler import PREVIEW_DIR, THUMBNAIL_DIR
from photo_jobs.jobs.engine import JobEngine
from photo_jobs.jobs.events import BroadcastEventSink
from photo_jobs.jobs.handlers import FunctionHandler, JobContext, JobType
from photo_jobs.jobs.models import JobItemStatus, JobStatus, JobView, StatusEvent

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Engine"),
]


@pytest.fixture()
def settings(tmp_path: Path, fast_pipeline: PipelineSettings) -> Settings:
    return Settings(
        db_path=tmp_path / "engine.db",
        projects_root=tmp_path / "projects",
        pipeline=fast_pipeline,
    )


@pytest.fixture()
def events() -> BroadcastEventSink:
    return BroadcastEventSink()


def _engine(settings: Settings, events: BroadcastEventSink, **kwargs) -> Iterator[JobEngine]:
    engine = JobEngine.from_settings(settings, event_sink=events, **kwargs)
    try:
        yield engine
    finally:
        engine.stop(timeout=5)


@pytest.fixture()
def engine(settings: Settings, events: BroadcastEventSink) -> Iterator[JobEngine]:
    yield from _engine(settings, events)


def test_upload_task_generates_derivatives(
    engine: JobEngine,
    events: BroadcastEventSink,
    settings: Settings,
    make_image: Callable[..., Path],
) -> None:
    project_dir = settings.projects_root / "12"
    make_image(project_dir / "IMG_0001.jpg", size=(1200, 800))
    make_image(project_dir / "IMG_0002.png", size=(300, 600), fmt="PNG")
    received: list[StatusEvent] = []
    events.subscribe(received.append)

    started = engine.start_task(
        "upload_postprocess",
        project_id=12,
        source="upload",
        items=["IMG_0001", {"filename": "IMG_0002.png"}, "IMG_9999"],
    )
    assert engine.scheduler.run_until_idle(max_seconds=30) == 1

    jobs = engine.list_jobs_by_task_id(started.task_id)
    assert [(job.type, job.status) for job in jobs] == [
        ("upload_postprocess", JobStatus.COMPLETED),
    ]
    assert (jobs[0].progress_done, jobs[0].progress_total) == (3, 3)
    statuses = [item.status for item in engine.repository.list_items(job_id=jobs[0].id)]
    assert statuses == [JobItemStatus.DONE, JobItemStatus.DONE, JobItemStatus.SKIPPED]
    for name in ("IMG_0001", "IMG_0002"):
        assert (project_dir / THUMBNAIL_DIR / f"{name}.jpg").is_file()
        assert (project_dir / PREVIEW_DIR / f"{name}.jpg").is_file()

    assert received[0].status == JobStatus.RUNNING
    assert received[-1].status == JobStatus.COMPLETED
    assert {event.task_id for event in received} == {started.task_id}
    assert {event.source for event in received} == {"upload"}


def test_project_delete_stops_work_and_removes_files(
    settings: Settings,
    events: BroadcastEventSink,
    make_image: Callable[..., Path],
) -> None:
    project_dir = settings.projects_root / "3"
    make_image(project_dir / "IMG_0001.jpg")
    cleaned: list[int | None] = []

    def _cleanup_db(job: JobView, context: JobContext) -> None:
        cleaned.append(job.project_id)

    for engine in _engine(
        settings,
        events,
        handlers={JobType.PROJECT_CLEANUP_DB: FunctionHandler(_cleanup_db)},
    ):
        pending = engine.start_task("generate_derivatives", project_id=3, items=["IMG_0001"])
        deletion = engine.start_task("project_delete", project_id=3)

        engine.scheduler.run_until_idle(max_seconds=30)

        pending_jobs = engine.list_jobs_by_task_id(pending.task_id)
        assert [job.status for job in pending_jobs] == [JobStatus.CANCELED]
        deletion_jobs = engine.list_jobs_by_task_id(deletion.task_id)
        assert [(job.type, job.status) for job in deletion_jobs] == [
            ("project_stop_processes", JobStatus.COMPLETED),
            ("project_delete_files", JobStatus.COMPLETED),
            ("project_cleanup_db", JobStatus.COMPLETED),
        ]
        assert not project_dir.exists()
        assert cleaned == [3]


def test_step_without_handler_fails_the_chain(
    engine: JobEngine,
    settings: Settings,
) -> None:
    (settings.projects_root / "4").mkdir(parents=True)

    deletion = engine.start_task("project_delete", project_id=4)
    engine.scheduler.run_until_idle(max_seconds=30)

    jobs = engine.list_jobs_by_task_id(deletion.task_id)
    assert [job.status for job in jobs] == [
        JobStatus.COMPLETED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
    ]
    assert jobs[-1].error_message == "Unknown job type: project_cleanup_db"
    assert jobs[-1].attempts == 0


def test_delete_refuses_paths_outside_projects_root(
    engine: JobEngine,
    settings: Settings,
    tmp_path: Path,
) -> None:
    outside = tmp_path / "keep"
    outside.mkdir()

    started = engine.orchestrator.start_task(
        "project_delete",
        project_id=5,
        payload={"project_folder": "../keep"},
    )
    engine.scheduler.run_until_idle(max_seconds=30)

    jobs = engine.list_jobs_by_task_id(started.task_id)
    assert [job.type for job in jobs] == ["project_stop_processes", "project_delete_files"]
    assert jobs[-1].status == JobStatus.FAILED
    assert jobs[-1].attempts == settings.pipeline.max_attempts_default
    assert "Refusing to delete" in (jobs[-1].error_message or "")
    assert outside.is_dir()


def test_engine_lifecycle_runs_jobs_in_background(
    engine: JobEngine,
    settings: Settings,
    make_image: Callable[..., Path],
) -> None:
    make_image(settings.projects_root / "8" / "a.jpg", size=(64, 64))

    with engine:
        assert engine.scheduler.running
        started = engine.start_task("generate_derivatives", project_id=8, items=["a"])
        job_id = started.first_job_id
        assert job_id is not None

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            job = engine.repository.get(job_id=job_id)
            if job is not None and job.status == JobStatus.COMPLETED:
                break
            time.sleep(0.05)
        else:
            pytest.fail("generate_derivatives job did not complete in the background")

    assert engine.scheduler.running is False
    assert engine.pool is not None
    assert engine.pool.closed


def test_invalid_settings_are_rejected(tmp_path: Path) -> None:
    settings = Settings(
        db_path=tmp_path / "x.db",
        pipeline=PipelineSettings(heartbeat_seconds=5, stale_seconds=5),
    )
    with pytest.raises(ValueError, match="PHOTO_JOBS_STALE_SECONDS"):
        JobEngine.from_settings(settings)


def test_periodic_tasks_without_a_first_step_handler_are_not_scheduled(
    settings: Settings,
    events: BroadcastEventSink,
) -> None:
    maintained = replace(settings, maintenance=MaintenanceSettings(enabled=True))

    for bare in _engine(maintained, events):
        assert bare.periodic is None

    discovery = {JobType.FOLDER_DISCOVERY: FunctionHandler(lambda _job, _ctx: None)}
    for wired in _engine(maintained, events, handlers=discovery):
        assert wired.periodic is not None
        assert [task.task_type for task in wired.periodic.tasks] == ["folder_discovery"]
