"""Bounding box helpers in percentage-of-image space (0-100)."""
from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidGeometryError

PERCENT_MAX = 100.0


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Rect:
    """Axis-aligned box; all four values are percentages of the image size."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_corners(cls, first: Point, second: Point) -> "Rect":
        """Span two points regardless of the direction they were given in."""
        left = min(first.x, second.x)
        top = min(first.y, second.y)
        return cls(
            x=left,
            y=top,
            width=max(first.x, second.x) - left,
            height=max(first.y, second.y) - top,
        )

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class PixelBox:
    """Detector output box in source-image pixels."""

    x: float
    y: float
    width: float
    height: float

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class DisplayedImage:
    """Where the photo is currently rendered, in client (screen) pixels."""

    left: float
    top: float
    width: float
    height: float

    def to_percent(self, client_x: float, client_y: float) -> Point:
        """Map a pointer position onto the image, clamped to its edges."""
        return Point(
            x=_clamp_percent(client_x - self.left, self.width),
            y=_clamp_percent(client_y - self.top, self.height),
        )


def pixel_box_to_rect(box: PixelBox, image_width: int, image_height: int) -> Rect:
    """Convert a detector box to percentages, clipping anything past the edges."""
    left = _clamp_percent(box.x, image_width)
    top = _clamp_percent(box.y, image_height)
    right = _clamp_percent(box.x + box.width, image_width)
    bottom = _clamp_percent(box.y + box.height, image_height)
    return Rect(x=left, y=top, width=right - left, height=bottom - top)


def validate_rect(rect: Rect) -> Rect:
    """Reject boxes that cannot be stored.

    Raises:
        InvalidGeometryError: If any value is NaN, the size is not positive,
            or the box extends outside 0-100.
    """
    values = (rect.x, rect.y, rect.width, rect.height)
    if any(value != value for value in values):
        raise InvalidGeometryError("bounding box contains NaN", details=rect.as_dict())
    if rect.width <= 0 or rect.height <= 0:
        raise InvalidGeometryError("bounding box must have positive width and height", details=rect.as_dict())
    if rect.x < 0 or rect.y < 0 or rect.x + rect.width > PERCENT_MAX or rect.y + rect.height > PERCENT_MAX:
        raise InvalidGeometryError("bounding box must lie within 0-100%", details=rect.as_dict())
    return rect


def _clamp_percent(value: float, denom: float) -> float:
    if denom <= 0:
        return 0.0
    ratio = value * PERCENT_MAX / float(denom)
    return max(0.0, min(PERCENT_MAX, ratio))
