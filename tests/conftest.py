"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from PIL import Image

from photo_jobs.config import PipelineSettings
from photo_jobs.jobs.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def fast_pipeline() -> PipelineSettings:
    """Scheduler settings tuned for sub-second tests."""

    return PipelineSettings(
        poll_interval_seconds=0.05,
        heartbeat_seconds=0.05,
        stale_seconds=30.0,
        max_attempts_default=3,
        priority_threshold=90,
        priority_lane_slots=1,
        max_parallel_jobs=2,
        worker_id="test-worker",
    )


@pytest.fixture()
def make_image() -> Callable[..., Path]:
    """Write a solid-color image of the given size and format."""

    def _make(path: Path, size: tuple[int, int] = (640, 480), fmt: str = "JPEG") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "RGBA" if fmt == "PNG" else "RGB"
        Image.new(mode, size, color=(200, 80, 40)).save(path, format=fmt)
        return path

    return _make
