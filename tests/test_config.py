from __future__ import annotations

from pathlib import Path

import allure
import pytest

from photo_jobs.config import (
    ImagePoolSettings,
    MaintenanceSettings,
    PipelineSettings,
    ProcessingSettings,
    Settings,
)

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PHOTO_JOBS_DB_PATH",
        "PHOTO_JOBS_PROJECTS_ROOT",
        "PHOTO_JOBS_TASK_DEFINITIONS",
        "PHOTO_JOBS_MAX_PARALLEL_JOBS",
        "PHOTO_JOBS_MAINTENANCE_ENABLED",
        "PHOTO_JOBS_THUMBNAIL_QUALITY",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".photo_jobs.db")
    assert settings.projects_root == Path(".projects")
    assert settings.task_definitions_path is None
    assert settings.pipeline.max_parallel_jobs == 2
    assert settings.pipeline.priority_threshold == 90
    assert settings.processing.thumbnail_max_width == 200
    assert settings.maintenance.enabled is False
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PHOTO_JOBS_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("PHOTO_JOBS_TASK_DEFINITIONS", str(tmp_path / "tasks.json"))
    monkeypatch.setenv("PHOTO_JOBS_MAX_PARALLEL_JOBS", "6")
    monkeypatch.setenv("PHOTO_JOBS_PRIORITY_LANE_SLOTS", "2")
    monkeypatch.setenv("PHOTO_JOBS_IMAGE_WORKERS", "8")
    monkeypatch.setenv("PHOTO_JOBS_PREVIEW_QUALITY", "70")
    monkeypatch.setenv("PHOTO_JOBS_MAINTENANCE_ENABLED", "yes")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.task_definitions_path == tmp_path / "tasks.json"
    assert settings.pipeline.normal_slots == 4
    assert settings.image_pool.worker_count == 8
    assert settings.processing.preview_quality == 70
    assert settings.maintenance.enabled is True

    explicit = Settings.from_env(db_path=tmp_path / "cli.db")
    assert explicit.db_path == tmp_path / "cli.db"


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PHOTO_JOBS_MAINTENANCE_ENABLED", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean value for PHOTO_JOBS_MAINTENANCE_ENABLED"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(pipeline=PipelineSettings(stale_seconds=1, heartbeat_seconds=1)), "STALE_SECONDS"),
        (Settings(pipeline=PipelineSettings(max_attempts_default=0)), "MAX_ATTEMPTS"),
        (Settings(image_pool=ImagePoolSettings(worker_count=0)), "IMAGE_WORKERS"),
        (Settings(processing=ProcessingSettings(thumbnail_quality=101)), "THUMBNAIL_QUALITY"),
        (Settings(processing=ProcessingSettings(preview_max_width=0)), "PREVIEW_MAX_WIDTH"),
        (
            Settings(maintenance=MaintenanceSettings(enabled=True, scavenge_interval_seconds=0)),
            "Maintenance intervals",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_disabled_maintenance_ignores_intervals() -> None:
    Settings(maintenance=MaintenanceSettings(enabled=False, maintenance_interval_seconds=0)).validate()


def test_lane_slots_are_clamped() -> None:
    settings = PipelineSettings(max_parallel_jobs=0, priority_lane_slots=-3)
    assert settings.total_slots == 1
    assert settings.priority_slots == 0
    assert settings.normal_slots == 1
    warnings = settings.sanity_warnings()
    assert "max_parallel_jobs=0 clamped to 1." in warnings
    assert "priority_lane_slots=-3 clamped to 0." in warnings

    assert PipelineSettings().sanity_warnings() == []
