"""Crop geometry resolution against the capture source's native size."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import av

from .config import RecorderConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CropRequest:
    """A crop rectangle as requested by the user, before any clamping."""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True, slots=True)
class CaptureRectangle:
    """A validated capture region in source pixels."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.x < 0 or self.y < 0:
            raise ValueError("Capture offsets must not be negative")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Capture dimensions must be positive")

    def filter_expression(self) -> str:
        """Return the ffmpeg ``crop`` filter for this rectangle."""

        return f"crop={self.width}:{self.height}:{self.x}:{self.y}"

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


def crop_request(
    x: int | None,
    y: int | None,
    width: int | None,
    height: int | None,
) -> CropRequest | None:
    """Return a request only when all four values are present."""

    if x is None or y is None or width is None or height is None:
        return None
    return CropRequest(int(x), int(y), int(width), int(height))


def clamp_crop(
    request: CropRequest,
    source_width: int,
    source_height: int,
) -> CaptureRectangle | None:
    """Clamp ``request`` into the source frame, or ``None`` if nothing remains."""

    if source_width <= 0 or source_height <= 0:
        return None
    cx = max(request.x, 0)
    cy = max(request.y, 0)
    if cx >= source_width or cy >= source_height:
        return None
    cw = min(max(request.width, 1), source_width - cx)
    ch = min(max(request.height, 1), source_height - cy)
    if cw <= 0 or ch <= 0:
        return None
    return CaptureRectangle(cx, cy, cw, ch)


Probe = Callable[[str], tuple[int, int] | None]


def probe_source_dimensions(config: RecorderConfig, source: str) -> tuple[int, int] | None:
    """Open ``source`` with PyAV and return its native ``(width, height)``."""

    target = config.capture_input(source)
    try:
        container = av.open(
            target,
            format=config.input_format,
            options={"framerate": str(config.framerate)},
        )
    except (av.FFmpegError, OSError, ValueError) as exc:
        logger.warning("Unable to open capture source %s for probing: %s", target, exc)
        return None
    try:
        stream = next(iter(container.streams.video), None)
        if stream is None:
            logger.warning("Capture source %s exposes no video stream", target)
            return None
        context = stream.codec_context
        return int(context.width), int(context.height)
    finally:
        container.close()


class GeometryResolver:
    """Turn an optional crop request into a safe capture rectangle."""

    def __init__(self, config: RecorderConfig, *, probe: Probe | None = None) -> None:
        self._config = config
        self._probe = probe

    def resolve(self, requested: CropRequest | None, source: str) -> CaptureRectangle | None:
        if requested is None:
            return None
        dimensions = self._probe_dimensions(source)
        if dimensions is None:
            logger.warning("Source %s could not be probed; recording full frame", source)
            return None
        width, height = dimensions
        if width <= 0 or height <= 0:
            logger.warning(
                "Source %s reported invalid size %sx%s; recording full frame",
                source,
                width,
                height,
            )
            return None
        rectangle = clamp_crop(requested, width, height)
        if rectangle is None:
            logger.warning(
                "Crop %s lies outside the %sx%s source; recording full frame",
                requested,
                width,
                height,
            )
        elif (rectangle.x, rectangle.y, rectangle.width, rectangle.height) != (
            requested.x,
            requested.y,
            requested.width,
            requested.height,
        ):
            logger.info("Crop clamped to %s within %sx%s", rectangle, width, height)
        return rectangle

    def _probe_dimensions(self, source: str) -> tuple[int, int] | None:
        if self._probe is not None:
            return self._probe(source)
        return probe_source_dimensions(self._config, source)


__all__ = [
    "CaptureRectangle",
    "CropRequest",
    "GeometryResolver",
    "clamp_crop",
    "crop_request",
    "probe_source_dimensions",
]
