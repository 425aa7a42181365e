"""Spatiotemporal primitives: coordinates, bounding boxes, time, resolution."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence, Tuple

from geoquery.datatypes.crs import crs_to_string, is_valid_crs
from geoquery.errors import InvalidQueryError

Bounds = Tuple[float, float, float, float]

# Millisecond bounds of the proleptic Gregorian range used for "all time".
TIME_MIN = -8_334_632_851_200_001
TIME_MAX = 8_210_298_412_799_999


@dataclass(frozen=True)
class Coordinate2D:
    """A point in some spatial reference."""

    x: float
    y: float

    def as_tuple(self) -> tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class BoundingBox2D:
    """Axis-aligned bounding box; ``min <= max`` on both axes."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self) -> None:
        values = (self.xmin, self.ymin, self.xmax, self.ymax)
        if any(math.isnan(value) for value in values):
            raise InvalidQueryError("Bounding box coordinates must not be NaN.")
        if self.xmin > self.xmax or self.ymin > self.ymax:
            raise InvalidQueryError(
                f"Bounding box minimum exceeds maximum: {values}"
            )

    @classmethod
    def from_bounds(cls, bounds: Sequence[float]) -> "BoundingBox2D":
        if len(bounds) != 4:
            raise InvalidQueryError("Bounding box requires four values.")
        xmin, ymin, xmax, ymax = (float(value) for value in bounds)
        return cls(xmin, ymin, xmax, ymax)

    def as_tuple(self) -> Bounds:
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def upper_left(self) -> Coordinate2D:
        return Coordinate2D(self.xmin, self.ymax)

    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def intersects(self, other: "BoundingBox2D") -> bool:
        """Return True when the boxes share interior area."""
        return (
            self.xmin < other.xmax
            and other.xmin < self.xmax
            and self.ymin < other.ymax
            and other.ymin < self.ymax
        )

    def intersection(self, other: "BoundingBox2D") -> "BoundingBox2D | None":
        if not self.intersects(other):
            return None
        return BoundingBox2D(
            max(self.xmin, other.xmin),
            max(self.ymin, other.ymin),
            min(self.xmax, other.xmax),
            min(self.ymax, other.ymax),
        )

    def expanded(self, dx: float, dy: float) -> "BoundingBox2D":
        return BoundingBox2D(self.xmin - dx, self.ymin - dy, self.xmax + dx, self.ymax + dy)


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


@dataclass(frozen=True)
class TimeInterval:
    """Closed-open time interval ``[start, end)`` in epoch milliseconds.

    ``start == end`` denotes an instant.
    """

    start: int = TIME_MIN
    end: int = TIME_MAX

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise InvalidQueryError(
                f"Time interval start {self.start} is after end {self.end}"
            )

    @classmethod
    def instant(cls, value: int) -> "TimeInterval":
        return cls(value, value)

    @classmethod
    def parse(cls, text: str) -> "TimeInterval":
        """Parse ``start/end`` or a single instant, as ISO 8601 or epoch millis."""

        def _parse_one(token: str) -> int:
            token = token.strip()
            try:
                return int(token)
            except ValueError:
                pass
            try:
                return _to_millis(datetime.fromisoformat(token.replace("Z", "+00:00")))
            except ValueError as exc:
                raise InvalidQueryError(f"Invalid time value: {token}") from exc

        if "/" in text:
            start_text, end_text = text.split("/", 1)
            return cls(_parse_one(start_text), _parse_one(end_text))
        return cls.instant(_parse_one(text))

    def is_instant(self) -> bool:
        return self.start == self.end

    def intersects(self, other: "TimeInterval") -> bool:
        if self.is_instant() and other.is_instant():
            return self.start == other.start
        if self.is_instant():
            return other.start <= self.start < other.end
        if other.is_instant():
            return self.start <= other.start < self.end
        return self.start < other.end and other.start < self.end

    def as_tuple(self) -> tuple[int, int]:
        return (self.start, self.end)


@dataclass(frozen=True)
class SpatialResolution:
    """Pixel size in CRS units along x and y (both positive)."""

    x: float
    y: float

    def __post_init__(self) -> None:
        if not (self.x > 0 and self.y > 0) or math.isinf(self.x) or math.isinf(self.y):
            raise InvalidQueryError(
                f"Spatial resolution must be positive and finite: ({self.x}, {self.y})"
            )

    @classmethod
    def square(cls, size: float) -> "SpatialResolution":
        return cls(size, size)

    def as_tuple(self) -> tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class QueryRectangle:
    """Spatiotemporal query window, validated on construction."""

    bbox: BoundingBox2D
    time: TimeInterval
    resolution: SpatialResolution
    spatial_reference: str = "EPSG:4326"

    def __post_init__(self) -> None:
        if not isinstance(self.bbox, BoundingBox2D):
            raise InvalidQueryError("Query bbox must be a BoundingBox2D.")
        if not isinstance(self.time, TimeInterval):
            raise InvalidQueryError("Query time must be a TimeInterval.")
        if not isinstance(self.resolution, SpatialResolution):
            raise InvalidQueryError("Query resolution must be a SpatialResolution.")
        if self.bbox.is_degenerate():
            raise InvalidQueryError(f"Query bbox is degenerate: {self.bbox.as_tuple()}")
        if not is_valid_crs(self.spatial_reference):
            raise InvalidQueryError(
                f"Unknown spatial reference: {self.spatial_reference}"
            )
        object.__setattr__(self, "spatial_reference", crs_to_string(self.spatial_reference))

    @classmethod
    def create(
        cls,
        bounds: Sequence[float],
        *,
        resolution: float | tuple[float, float] = 1.0,
        time: TimeInterval | None = None,
        spatial_reference: str = "EPSG:4326",
    ) -> "QueryRectangle":
        """Build a rectangle from plain values."""
        if isinstance(resolution, tuple):
            spatial_resolution = SpatialResolution(float(resolution[0]), float(resolution[1]))
        else:
            spatial_resolution = SpatialResolution.square(float(resolution))
        return cls(
            bbox=BoundingBox2D.from_bounds(bounds),
            time=time or TimeInterval(),
            resolution=spatial_resolution,
            spatial_reference=spatial_reference,
        )

    def with_bbox(self, bbox: BoundingBox2D) -> "QueryRectangle":
        return QueryRectangle(bbox, self.time, self.resolution, self.spatial_reference)

    def reprojected(
        self,
        bbox: BoundingBox2D,
        resolution: SpatialResolution,
        spatial_reference: str,
    ) -> "QueryRectangle":
        return QueryRectangle(bbox, self.time, resolution, spatial_reference)
