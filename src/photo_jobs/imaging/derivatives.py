"""Derivative (thumbnail / preview) generation for a single source image."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 80


@dataclass(frozen=True, slots=True)
class DerivativeSpec:
    """One requested output: bounding box, JPEG quality and destination."""

    type: str
    width: int | None
    height: int | None
    quality: int
    output_path: Path


@dataclass(frozen=True, slots=True)
class PoolTask:
    """Unit of work for the image worker pool."""

    source_path: Path
    derivatives: tuple[DerivativeSpec, ...]


@dataclass(slots=True)
class DerivativeResult:
    """Outcome of one derivative; ``error`` is set instead of raising."""

    type: str
    output_path: Path
    width: int | None = None
    height: int | None = None
    size_bytes: int | None = None
    format: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def clamp_quality(quality: int | None) -> int:
    return max(1, min(100, int(quality or DEFAULT_JPEG_QUALITY)))


def process_image(task: PoolTask) -> list[DerivativeResult]:
    """Generate every derivative of ``task``.

    A missing source or an empty derivative list fails the whole task. A
    failure of one derivative is recorded in its result and the remaining
    derivatives are still produced.
    """

    source_path = Path(task.source_path)
    if not source_path.is_file():
        raise FileNotFoundError(f"Source file not found: {source_path}")
    if not task.derivatives:
        raise ValueError("No derivatives specified")

    results: list[DerivativeResult] = []
    for spec in task.derivatives:
        try:
            results.append(generate_derivative(source_path, spec))
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Derivative %s for %s failed: %s",
                spec.type,
                source_path,
                error,
            )
            results.append(
                DerivativeResult(
                    type=spec.type,
                    output_path=Path(spec.output_path),
                    error=str(error) or error.__class__.__name__,
                ),
            )
    return results


def generate_derivative(source_path: Path, spec: DerivativeSpec) -> DerivativeResult:
    output_path = Path(spec.output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with Image.open(source_path) as opened:
        image = ImageOps.exif_transpose(opened)
        if spec.width or spec.height:
            # thumbnail() keeps the aspect ratio and never enlarges.
            image.thumbnail(
                (spec.width or image.width, spec.height or image.height),
                Image.Resampling.LANCZOS,
            )
        if image.mode != "RGB":
            image = image.convert("RGB")
        image.save(
            output_path,
            format="JPEG",
            quality=clamp_quality(spec.quality),
            progressive=True,
            optimize=True,
        )
        width, height = image.size

    return DerivativeResult(
        type=spec.type,
        output_path=output_path,
        width=width,
        height=height,
        size_bytes=output_path.stat().st_size,
        format="jpeg",
    )
