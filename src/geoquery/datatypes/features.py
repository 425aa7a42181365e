"""Feature collections: ordered batches of geometries with attribute columns."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, Sequence

import numpy as np

from geoquery.datatypes.primitives import BoundingBox2D


class VectorDataType(Enum):
    """Geometry type of a feature collection."""

    DATA = "Data"
    MULTI_POINT = "MultiPoint"
    MULTI_LINE_STRING = "MultiLineString"
    MULTI_POLYGON = "MultiPolygon"


class FeatureDataType(Enum):
    """Attribute column types."""

    FLOAT = "float"
    INT = "int"
    TEXT = "text"

    @classmethod
    def for_array(cls, values: np.ndarray) -> "FeatureDataType":
        if np.issubdtype(values.dtype, np.floating):
            return cls.FLOAT
        if np.issubdtype(values.dtype, np.integer):
            return cls.INT
        return cls.TEXT


def _as_coordinates(coordinates: Any) -> np.ndarray:
    array = np.asarray(coordinates, dtype=np.float64)
    if array.size == 0:
        return np.empty((0, 2), dtype=np.float64)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError(f"Coordinates must have shape (n, 2), got {array.shape}")
    return array


@dataclass(eq=False)
class FeatureCollection:
    """Point features with aligned attribute columns.

    Each feature is a single point in ``coordinates``; ``columns`` hold one
    value per feature.
    """

    coordinates: np.ndarray
    columns: dict[str, np.ndarray] = field(default_factory=dict)
    data_type: VectorDataType = VectorDataType.MULTI_POINT
    index: int = 0

    def __post_init__(self) -> None:
        self.coordinates = _as_coordinates(self.coordinates)
        count = len(self.coordinates)
        normalized: dict[str, np.ndarray] = {}
        for name, values in self.columns.items():
            array = np.asarray(values)
            if array.shape != (count,):
                raise ValueError(
                    f"Column '{name}' has {array.shape[0] if array.ndim else 0} values "
                    f"for {count} features"
                )
            normalized[name] = array
        self.columns = normalized

    @classmethod
    def from_points(
        cls,
        points: Sequence[Sequence[float]],
        columns: Mapping[str, Sequence[Any]] | None = None,
        *,
        index: int = 0,
    ) -> "FeatureCollection":
        return cls(
            coordinates=np.asarray(points, dtype=np.float64).reshape(-1, 2),
            columns={name: np.asarray(values) for name, values in (columns or {}).items()},
            index=index,
        )

    @classmethod
    def empty(cls, column_types: Mapping[str, FeatureDataType] | None = None, *, index: int = 0) -> "FeatureCollection":
        columns: dict[str, np.ndarray] = {}
        for name, data_type in (column_types or {}).items():
            dtype = {FeatureDataType.FLOAT: np.float64, FeatureDataType.INT: np.int64}.get(
                data_type, object
            )
            columns[name] = np.empty(0, dtype=dtype)
        return cls(coordinates=np.empty((0, 2)), columns=columns, index=index)

    def __len__(self) -> int:
        return int(self.coordinates.shape[0])

    def __iter__(self) -> Iterator[tuple[float, float]]:
        for x, y in self.coordinates:
            yield (float(x), float(y))

    def is_empty(self) -> bool:
        return len(self) == 0

    def column_types(self) -> dict[str, FeatureDataType]:
        return {name: FeatureDataType.for_array(values) for name, values in self.columns.items()}

    def bbox(self) -> BoundingBox2D | None:
        if self.is_empty():
            return None
        xs = self.coordinates[:, 0]
        ys = self.coordinates[:, 1]
        return BoundingBox2D(float(xs.min()), float(ys.min()), float(xs.max()), float(ys.max()))

    def filter(self, keep: np.ndarray) -> "FeatureCollection":
        """Return the features where ``keep`` is True, preserving order."""
        keep = np.asarray(keep, dtype=bool)
        if keep.shape != (len(self),):
            raise ValueError("Filter mask must have one entry per feature.")
        return FeatureCollection(
            coordinates=self.coordinates[keep],
            columns={name: values[keep] for name, values in self.columns.items()},
            data_type=self.data_type,
            index=self.index,
        )

    def filter_bbox(self, bbox: BoundingBox2D) -> "FeatureCollection":
        xs = self.coordinates[:, 0]
        ys = self.coordinates[:, 1]
        keep = (xs >= bbox.xmin) & (xs <= bbox.xmax) & (ys >= bbox.ymin) & (ys <= bbox.ymax)
        return self.filter(keep)

    def slice(self, start: int, stop: int, *, index: int) -> "FeatureCollection":
        return FeatureCollection(
            coordinates=self.coordinates[start:stop],
            columns={name: values[start:stop] for name, values in self.columns.items()},
            data_type=self.data_type,
            index=index,
        )

    def with_column(self, name: str, values: np.ndarray) -> "FeatureCollection":
        columns = dict(self.columns)
        columns[name] = np.asarray(values)
        return FeatureCollection(
            coordinates=self.coordinates,
            columns=columns,
            data_type=self.data_type,
            index=self.index,
        )

    def with_coordinates(self, coordinates: np.ndarray) -> "FeatureCollection":
        return FeatureCollection(
            coordinates=coordinates,
            columns=dict(self.columns),
            data_type=self.data_type,
            index=self.index,
        )

    def with_index(self, index: int) -> "FeatureCollection":
        return FeatureCollection(
            coordinates=self.coordinates,
            columns=dict(self.columns),
            data_type=self.data_type,
            index=index,
        )

    def batches(self, batch_size: int) -> Iterator["FeatureCollection"]:
        """Split into order-preserving batches of at most ``batch_size`` features."""
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        for batch_index, start in enumerate(range(0, len(self), batch_size)):
            yield self.slice(start, start + batch_size, index=batch_index)
