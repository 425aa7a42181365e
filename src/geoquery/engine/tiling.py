"""Global tile grid and row-major tile enumeration for query rectangles."""

from __future__ import annotations

import math
from dataclasses import dataclass

from geoquery.datatypes.primitives import (
    BoundingBox2D,
    Coordinate2D,
    QueryRectangle,
    SpatialResolution,
)
from geoquery.datatypes.raster import GeoTransform
from geoquery.errors import InvalidQueryError

DEFAULT_TILE_SHAPE = (512, 512)
MAX_TILES_PER_QUERY = 250_000
_EPSILON = 1e-9


@dataclass(frozen=True)
class TileInfo:
    """One tile of the grid covering a query, in stream order."""

    index: int
    grid_index: tuple[int, int]
    geo_transform: GeoTransform
    shape: tuple[int, int]

    @property
    def bbox(self) -> BoundingBox2D:
        return self.geo_transform.bounds(self.shape)


@dataclass(frozen=True)
class TilingSpecification:
    """Tile shape (rows, cols) in pixels anchored at a global origin."""

    origin: Coordinate2D = Coordinate2D(0.0, 0.0)
    tile_shape: tuple[int, int] = DEFAULT_TILE_SHAPE

    def __post_init__(self) -> None:
        rows, cols = self.tile_shape
        if rows <= 0 or cols <= 0:
            raise ValueError(f"Tile shape must be positive: {self.tile_shape}")

    def grid_bounds(self, rect: QueryRectangle) -> tuple[int, int, int, int]:
        """Return inclusive (row_start, row_end, col_start, col_end) tile indices."""
        rows, cols = self.tile_shape
        tile_width = cols * rect.resolution.x
        tile_height = rows * rect.resolution.y
        bbox = rect.bbox
        col_start = math.floor((bbox.xmin - self.origin.x) / tile_width + _EPSILON)
        col_end = math.ceil((bbox.xmax - self.origin.x) / tile_width - _EPSILON) - 1
        row_start = math.floor((self.origin.y - bbox.ymax) / tile_height + _EPSILON)
        row_end = math.ceil((self.origin.y - bbox.ymin) / tile_height - _EPSILON) - 1
        return row_start, max(row_start, row_end), col_start, max(col_start, col_end)

    def snap(
        self, bbox: BoundingBox2D, resolution: SpatialResolution, *, pad: int = 0
    ) -> BoundingBox2D:
        """Grow ``bbox`` outward to whole pixels of the global grid.

        ``pad`` adds that many pixels on every side. The result is at least
        one pixel wide and tall, so degenerate boxes (a single point) snap to
        the pixel containing them.
        """
        res_x, res_y = resolution.x, resolution.y
        col_start = math.floor((bbox.xmin - self.origin.x) / res_x + _EPSILON) - pad
        col_end = math.ceil((bbox.xmax - self.origin.x) / res_x - _EPSILON) + pad
        row_start = math.floor((self.origin.y - bbox.ymax) / res_y + _EPSILON) - pad
        row_end = math.ceil((self.origin.y - bbox.ymin) / res_y - _EPSILON) + pad
        col_end = max(col_end, col_start + 1)
        row_end = max(row_end, row_start + 1)
        return BoundingBox2D(
            self.origin.x + col_start * res_x,
            self.origin.y - row_end * res_y,
            self.origin.x + col_end * res_x,
            self.origin.y - row_start * res_y,
        )

    def snap_rect(self, rect: QueryRectangle, *, pad: int = 0) -> QueryRectangle:
        return rect.with_bbox(self.snap(rect.bbox, rect.resolution, pad=pad))

    def is_aligned(self, rect: QueryRectangle) -> bool:
        """Return True when ``rect`` already covers whole pixels of the global grid."""
        snapped = self.snap(rect.bbox, rect.resolution)
        tolerance = _EPSILON * max(rect.resolution.x, rect.resolution.y)
        return all(
            math.isclose(edge, snapped_edge, abs_tol=tolerance)
            for edge, snapped_edge in zip(rect.bbox.as_tuple(), snapped.as_tuple())
        )

    def tile_count(self, rect: QueryRectangle) -> int:
        row_start, row_end, col_start, col_end = self.grid_bounds(rect)
        return (row_end - row_start + 1) * (col_end - col_start + 1)

    def tile_geo_transform(self, grid_index: tuple[int, int], rect: QueryRectangle) -> GeoTransform:
        rows, cols = self.tile_shape
        row, col = grid_index
        return GeoTransform.new_with_coordinate_x_y(
            self.origin.x + col * cols * rect.resolution.x,
            rect.resolution.x,
            self.origin.y - row * rows * rect.resolution.y,
            -rect.resolution.y,
        )

    def tiles_for(self, rect: QueryRectangle) -> list[TileInfo]:
        """Return the tiles intersecting the rectangle in row-major order."""
        count = self.tile_count(rect)
        if count > MAX_TILES_PER_QUERY:
            raise InvalidQueryError(
                f"Query covers {count} tiles; the limit is {MAX_TILES_PER_QUERY}"
            )
        row_start, row_end, col_start, col_end = self.grid_bounds(rect)
        tiles: list[TileInfo] = []
        for row in range(row_start, row_end + 1):
            for col in range(col_start, col_end + 1):
                tiles.append(
                    TileInfo(
                        index=len(tiles),
                        grid_index=(row, col),
                        geo_transform=self.tile_geo_transform((row, col), rect),
                        shape=self.tile_shape,
                    )
                )
        return tiles


def region_shape(rect: QueryRectangle) -> tuple[int, int]:
    """Return the (rows, cols) of a grid covering the rectangle at its resolution."""
    cols = max(1, math.ceil(rect.bbox.width / rect.resolution.x - _EPSILON))
    rows = max(1, math.ceil(rect.bbox.height / rect.resolution.y - _EPSILON))
    return rows, cols


def region_geo_transform(rect: QueryRectangle) -> GeoTransform:
    """Return the north-up geo transform anchored at the rectangle's upper left."""
    return GeoTransform(rect.bbox.upper_left, rect.resolution.x, -rect.resolution.y)
