from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import pytest
from PIL import Image

from photo_jobs.config import ProcessingSettings
from photo_jobs.imaging.derivatives import (
    DerivativeSpec,
    PoolTask,
    clamp_quality,
    process_image,
)
from photo_jobs.imaging.handler import (
    PREVIEW_DIR,
    THUMBNAIL_DIR,
    GenerateDerivativesHandler,
    default_project_dir_resolver,
    find_source_file,
)
from photo_jobs.imaging.pool import ImageWorkerPool
from photo_jobs.jobs.handlers import JobContext
from photo_jobs.jobs.models import JobCreate, JobItemCreate, JobItemStatus
from photo_jobs.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Image Pipeline"),
    allure.feature("Derivatives"),
]


def _spec(kind: str, output: Path, box: tuple[int, int], quality: int = 80) -> DerivativeSpec:
    return DerivativeSpec(
        type=kind,
        width=box[0],
        height=box[1],
        quality=quality,
        output_path=output,
    )


def test_process_image_bounds_size_and_writes_jpeg(
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    source = make_image(tmp_path / "IMG_0001.png", size=(800, 400), fmt="PNG")
    thumb = tmp_path / ".thumb" / "IMG_0001.jpg"
    preview = tmp_path / ".preview" / "IMG_0001.jpg"

    results = process_image(
        PoolTask(
            source_path=source,
            derivatives=(
                _spec("thumbnail", thumb, (200, 200)),
                _spec("preview", preview, (6000, 6000)),
            ),
        ),
    )

    assert [result.ok for result in results] == [True, True]
    assert (results[0].width, results[0].height) == (200, 100)
    assert (results[1].width, results[1].height) == (800, 400)
    assert results[0].size_bytes == thumb.stat().st_size
    with Image.open(thumb) as written:
        assert written.format == "JPEG"
        assert written.mode == "RGB"
        assert written.size == (200, 100)


def test_process_image_rejects_missing_source_and_empty_request(
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    with pytest.raises(FileNotFoundError, match="Source file not found"):
        process_image(
            PoolTask(
                source_path=tmp_path / "missing.jpg",
                derivatives=(_spec("thumbnail", tmp_path / "t.jpg", (10, 10)),),
            ),
        )

    source = make_image(tmp_path / "a.jpg")
    with pytest.raises(ValueError, match="No derivatives specified"):
        process_image(PoolTask(source_path=source, derivatives=()))


def test_one_failed_derivative_does_not_stop_the_others(
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    source = make_image(tmp_path / "a.jpg")
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    results = process_image(
        PoolTask(
            source_path=source,
            derivatives=(
                _spec("thumbnail", blocker / "a.jpg", (50, 50)),
                _spec("preview", tmp_path / "preview.jpg", (100, 100)),
            ),
        ),
    )

    assert results[0].ok is False
    assert results[0].error
    assert results[1].ok is True
    assert (tmp_path / "preview.jpg").is_file()


def test_clamp_quality() -> None:
    assert clamp_quality(0) == 80
    assert clamp_quality(None) == 80
    assert clamp_quality(-5) == 1
    assert clamp_quality(150) == 100
    assert clamp_quality(55) == 55


def test_find_source_file_matches_extension_case_insensitively(
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    upper = make_image(tmp_path / "IMG_0002.JPG")
    direct = make_image(tmp_path / "IMG_0003.jpeg")

    assert find_source_file(tmp_path, "IMG_0002") == upper
    assert find_source_file(tmp_path, "IMG_0003.jpeg") == direct
    assert find_source_file(tmp_path, "IMG_0404") is None


def test_default_project_dir_resolver(repository: JobRepository, tmp_path: Path) -> None:
    resolve = default_project_dir_resolver(tmp_path)
    by_folder = repository.enqueue(
        JobCreate(type="generate_derivatives", project_id=3, payload={"project_folder": "p3"}),
    )
    by_id = repository.enqueue(JobCreate(type="generate_derivatives", project_id=4))
    orphan = repository.enqueue(JobCreate(type="generate_derivatives"))

    assert resolve(by_folder) == tmp_path / "p3"
    assert resolve(by_id) == tmp_path / "4"
    with pytest.raises(ValueError, match="no project folder"):
        resolve(orphan)


@pytest.fixture()
def pool() -> Iterator[ImageWorkerPool]:
    image_pool = ImageWorkerPool(worker_count=2, idle_timeout_seconds=5)
    try:
        yield image_pool
    finally:
        image_pool.shutdown(timeout=1)


def _handler(pool: ImageWorkerPool, projects_root: Path) -> GenerateDerivativesHandler:
    return GenerateDerivativesHandler(
        pool=pool,
        settings=ProcessingSettings(thumbnail_max_width=64, thumbnail_max_height=64),
        project_dir_resolver=default_project_dir_resolver(projects_root),
    )


def _context(
    repository: JobRepository,
    job_id: int,
    progress: list[tuple[int, int | None]],
    canceled: Callable[[], bool] = lambda: False,
) -> JobContext:
    def _report(done: int, total: int | None) -> None:
        progress.append((done, total))
        repository.update_progress(job_id=job_id, done=done, total=total)

    return JobContext(repository=repository, report_progress=_report, is_canceled=canceled)


def test_handler_processes_items_and_skips_missing_sources(
    repository: JobRepository,
    pool: ImageWorkerPool,
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    projects_root = tmp_path / "projects"
    make_image(projects_root / "7" / "IMG_0001.jpg", size=(300, 150))
    job = repository.enqueue_with_items(
        JobCreate(type="generate_derivatives", project_id=7),
        [JobItemCreate(filename="IMG_0001"), JobItemCreate(filename="IMG_0404")],
    )
    progress: list[tuple[int, int | None]] = []

    _handler(pool, projects_root).run(job, _context(repository, job.id, progress))

    items = repository.list_items(job_id=job.id)
    assert [(item.status, item.message) for item in items] == [
        (JobItemStatus.DONE, None),
        (JobItemStatus.SKIPPED, "no supported source"),
    ]
    project_dir = projects_root / "7"
    assert (project_dir / THUMBNAIL_DIR / "IMG_0001.jpg").is_file()
    assert (project_dir / PREVIEW_DIR / "IMG_0001.jpg").is_file()
    with Image.open(project_dir / THUMBNAIL_DIR / "IMG_0001.jpg") as thumb:
        assert thumb.size == (64, 32)
    assert progress == [(0, 2), (1, 2), (2, 2)]
    stored = repository.get(job_id=job.id)
    assert stored is not None
    assert (stored.progress_done, stored.progress_total) == (2, 2)


def test_handler_creates_items_from_filenames_payload(
    repository: JobRepository,
    pool: ImageWorkerPool,
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    projects_root = tmp_path / "projects"
    make_image(projects_root / "album" / "DSC_1.png", fmt="PNG")
    job = repository.enqueue(
        JobCreate(
            type="upload_postprocess",
            payload={"project_folder": "album", "filenames": ["DSC_1.png"]},
        ),
    )
    progress: list[tuple[int, int | None]] = []

    _handler(pool, projects_root).run(job, _context(repository, job.id, progress))

    items = repository.list_items(job_id=job.id)
    assert [(item.filename, item.status) for item in items] == [("DSC_1.png", JobItemStatus.DONE)]
    assert (projects_root / "album" / THUMBNAIL_DIR / "DSC_1.jpg").is_file()
    assert progress[-1] == (1, 1)


def test_handler_stops_when_job_is_canceled(
    repository: JobRepository,
    pool: ImageWorkerPool,
    tmp_path: Path,
    make_image: Callable[..., Path],
) -> None:
    projects_root = tmp_path / "projects"
    for name in ("a", "b", "c"):
        make_image(projects_root / "1" / f"{name}.jpg", size=(32, 32))
    job = repository.enqueue_with_items(
        JobCreate(type="generate_derivatives", project_id=1),
        [JobItemCreate(filename=name) for name in ("a", "b", "c")],
    )
    checks = {"count": 0}

    def _canceled_after_first() -> bool:
        checks["count"] += 1
        return checks["count"] > 1

    _handler(pool, projects_root).run(
        job,
        _context(repository, job.id, [], canceled=_canceled_after_first),
    )

    statuses = [item.status for item in repository.list_items(job_id=job.id)]
    assert statuses == [JobItemStatus.DONE, JobItemStatus.PENDING, JobItemStatus.PENDING]
