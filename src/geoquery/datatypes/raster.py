"""Raster grids, geo transforms, and no-data handling."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import numpy as np
from rasterio.transform import Affine

from geoquery.datatypes.primitives import BoundingBox2D, Coordinate2D, TimeInterval


class RasterDataType(Enum):
    """Pixel data types supported by raster operators."""

    U8 = "U8"
    U16 = "U16"
    U32 = "U32"
    U64 = "U64"
    I8 = "I8"
    I16 = "I16"
    I32 = "I32"
    I64 = "I64"
    F32 = "F32"
    F64 = "F64"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(_NUMPY_TYPES[self])

    @property
    def is_float(self) -> bool:
        return self in (RasterDataType.F32, RasterDataType.F64)

    def can_hold(self, value: float) -> bool:
        """Return True when ``value`` is stored exactly as this type's no-data."""
        if self.is_float:
            return math.isnan(value) or abs(value) <= float(np.finfo(self.dtype).max)
        info = np.iinfo(self.dtype)
        return float(value).is_integer() and info.min <= value <= info.max

    def representable(self, values: np.ndarray) -> np.ndarray:
        """Mask of float64 ``values`` that survive a cast to this type.

        Integer casts truncate toward zero, so values within one of the range
        bounds still land inside it.
        """
        finite = np.isfinite(values)
        with np.errstate(invalid="ignore"):
            if self.is_float:
                return finite & (np.abs(values) <= float(np.finfo(self.dtype).max))
            info = np.iinfo(self.dtype)
            return finite & (values > float(info.min) - 1) & (values < float(info.max) + 1)

    @classmethod
    def from_dtype(cls, value: str | np.dtype) -> "RasterDataType":
        name = np.dtype(value).name
        for member, numpy_name in _NUMPY_TYPES.items():
            if numpy_name == name:
                return member
        raise ValueError(f"Unsupported raster dtype: {name}")


_NUMPY_TYPES = {
    RasterDataType.U8: "uint8",
    RasterDataType.U16: "uint16",
    RasterDataType.U32: "uint32",
    RasterDataType.U64: "uint64",
    RasterDataType.I8: "int8",
    RasterDataType.I16: "int16",
    RasterDataType.I32: "int32",
    RasterDataType.I64: "int64",
    RasterDataType.F32: "float32",
    RasterDataType.F64: "float64",
}


@dataclass(frozen=True)
class GeoTransform:
    """Affine pixel-to-world mapping without rotation terms.

    ``y_pixel_size`` is negative for north-up grids.
    """

    upper_left: Coordinate2D
    x_pixel_size: float
    y_pixel_size: float

    @classmethod
    def new_with_coordinate_x_y(
        cls,
        upper_left_x: float,
        x_pixel_size: float,
        upper_left_y: float,
        y_pixel_size: float,
    ) -> "GeoTransform":
        return cls(Coordinate2D(upper_left_x, upper_left_y), x_pixel_size, y_pixel_size)

    @classmethod
    def from_gdal(cls, values: Sequence[float]) -> "GeoTransform":
        """Build from a GDAL 6-tuple; rotation terms are ignored."""
        return cls.new_with_coordinate_x_y(values[0], values[1], values[3], values[5])

    def to_affine(self) -> Affine:
        return Affine(
            self.x_pixel_size, 0.0, self.upper_left.x, 0.0, self.y_pixel_size, self.upper_left.y
        )

    def grid_2d_to_coordinate_2d(self, grid_index: tuple[int, int]) -> Coordinate2D:
        """Map a (row, col) grid index to the coordinate of its upper-left corner."""
        row, col = grid_index
        return Coordinate2D(
            self.upper_left.x + col * self.x_pixel_size,
            self.upper_left.y + row * self.y_pixel_size,
        )

    def coordinate_2d_to_grid_2d(self, coord: Coordinate2D) -> tuple[int, int]:
        """Map a coordinate to the (row, col) of the pixel containing it."""
        col = math.floor((coord.x - self.upper_left.x) / self.x_pixel_size)
        row = math.floor((coord.y - self.upper_left.y) / self.y_pixel_size)
        return (row, col)

    def bounds(self, shape: tuple[int, int]) -> BoundingBox2D:
        rows, cols = shape
        x0 = self.upper_left.x
        x1 = x0 + cols * self.x_pixel_size
        y0 = self.upper_left.y
        y1 = y0 + rows * self.y_pixel_size
        return BoundingBox2D(min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1))


def nodata_mask(data: np.ndarray, nodata: float | None) -> np.ndarray:
    """Return a boolean mask where nodata values are present."""
    if nodata is None:
        return np.zeros(data.shape, dtype=bool)
    if np.issubdtype(data.dtype, np.floating):
        if math.isnan(nodata):
            return np.isnan(data)
        return np.isnan(data) | (data == nodata)
    if isinstance(nodata, float) and math.isnan(nodata):
        return np.zeros(data.shape, dtype=bool)
    return data == nodata


@dataclass(eq=False)
class Raster2D:
    """A single-band grid with its geo transform, no-data value, and mask.

    The mask is authoritative: True marks a no-data pixel. When ``nodata``
    is set, masked pixels also hold that value in ``data``. An omitted mask
    is derived from ``nodata``.
    """

    geo_transform: GeoTransform
    data: np.ndarray
    nodata: float | None = None
    time: TimeInterval = field(default_factory=TimeInterval)
    mask: np.ndarray = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.data.ndim != 2:
            raise ValueError(f"Raster data must be 2-D, got shape {self.data.shape}")
        if self.mask is None:
            self.mask = nodata_mask(self.data, self.nodata)
        elif self.mask.shape != self.data.shape:
            raise ValueError("Raster mask must match the data shape.")

    @classmethod
    def empty(
        cls,
        geo_transform: GeoTransform,
        shape: tuple[int, int],
        *,
        dtype: str | np.dtype,
        nodata: float | None,
        time: TimeInterval | None = None,
    ) -> "Raster2D":
        """Return a raster whose pixels are all no-data."""
        fill = nodata if nodata is not None else 0
        data = np.full(shape, fill, dtype=np.dtype(dtype))
        return cls(
            geo_transform=geo_transform,
            data=data,
            nodata=nodata,
            time=time or TimeInterval(),
            mask=np.ones(shape, dtype=bool),
        )

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self.data.shape[0]), int(self.data.shape[1]))

    @property
    def bbox(self) -> BoundingBox2D:
        return self.geo_transform.bounds(self.shape)

    @property
    def data_type(self) -> RasterDataType:
        return RasterDataType.from_dtype(self.data.dtype)

    def masked(self) -> np.ma.MaskedArray:
        return np.ma.array(self.data, mask=self.mask)

    def is_empty(self) -> bool:
        """Return True when every pixel is no-data."""
        return bool(self.mask.all())

    def window(self, row_off: int, col_off: int, height: int, width: int) -> "Raster2D":
        """Return a copy of a pixel window of this raster."""
        rows = slice(row_off, row_off + height)
        cols = slice(col_off, col_off + width)
        return Raster2D(
            geo_transform=GeoTransform(
                self.geo_transform.grid_2d_to_coordinate_2d((row_off, col_off)),
                self.geo_transform.x_pixel_size,
                self.geo_transform.y_pixel_size,
            ),
            data=self.data[rows, cols].copy(),
            nodata=self.nodata,
            time=self.time,
            mask=self.mask[rows, cols].copy(),
        )

    def value_at(self, x: float, y: float) -> float | None:
        """Return the pixel value at a coordinate, or None for no-data/outside."""
        row, col = self.geo_transform.coordinate_2d_to_grid_2d(Coordinate2D(x, y))
        rows, cols = self.shape
        if not (0 <= row < rows and 0 <= col < cols):
            return None
        if self.mask[row, col]:
            return None
        return float(self.data[row, col])

    def sample_nearest(
        self,
        geo_transform: GeoTransform,
        shape: tuple[int, int],
        *,
        time: TimeInterval | None = None,
    ) -> "Raster2D":
        """Resample onto another grid by taking the pixel under each cell center."""
        rows, cols = shape
        xs = geo_transform.upper_left.x + (np.arange(cols) + 0.5) * geo_transform.x_pixel_size
        ys = geo_transform.upper_left.y + (np.arange(rows) + 0.5) * geo_transform.y_pixel_size
        src = self.geo_transform
        src_cols = np.floor((xs - src.upper_left.x) / src.x_pixel_size).astype(np.int64)
        src_rows = np.floor((ys - src.upper_left.y) / src.y_pixel_size).astype(np.int64)
        src_height, src_width = self.shape
        col_ok = (src_cols >= 0) & (src_cols < src_width)
        row_ok = (src_rows >= 0) & (src_rows < src_height)

        out = Raster2D.empty(
            geo_transform, shape, dtype=self.data.dtype, nodata=self.nodata, time=time or self.time
        )
        if not col_ok.any() or not row_ok.any():
            return out
        dst_r = np.nonzero(row_ok)[0]
        dst_c = np.nonzero(col_ok)[0]
        grid = np.ix_(dst_r, dst_c)
        src_grid = np.ix_(src_rows[row_ok], src_cols[col_ok])
        out.data[grid] = self.data[src_grid]
        out.mask[grid] = self.mask[src_grid]
        return out

    def blit(self, source: "Raster2D") -> None:
        """Copy the valid pixels of an aligned source raster into this raster."""
        dst_gt = self.geo_transform
        src_gt = source.geo_transform
        if not (
            math.isclose(dst_gt.x_pixel_size, src_gt.x_pixel_size, rel_tol=1e-9)
            and math.isclose(dst_gt.y_pixel_size, src_gt.y_pixel_size, rel_tol=1e-9)
        ):
            raise ValueError("Blit requires rasters with equal pixel sizes.")
        col_off = round((src_gt.upper_left.x - dst_gt.upper_left.x) / dst_gt.x_pixel_size)
        row_off = round((src_gt.upper_left.y - dst_gt.upper_left.y) / dst_gt.y_pixel_size)
        dst_rows, dst_cols = self.shape
        src_rows, src_cols = source.shape

        dst_r0 = max(0, row_off)
        dst_c0 = max(0, col_off)
        dst_r1 = min(dst_rows, row_off + src_rows)
        dst_c1 = min(dst_cols, col_off + src_cols)
        if dst_r0 >= dst_r1 or dst_c0 >= dst_c1:
            return
        src_r0 = dst_r0 - row_off
        src_c0 = dst_c0 - col_off
        src_data = source.data[src_r0 : src_r0 + dst_r1 - dst_r0, src_c0 : src_c0 + dst_c1 - dst_c0]
        src_mask = source.mask[src_r0 : src_r0 + dst_r1 - dst_r0, src_c0 : src_c0 + dst_c1 - dst_c0]
        valid = ~src_mask
        dst_data = self.data[dst_r0:dst_r1, dst_c0:dst_c1]
        dst_mask = self.mask[dst_r0:dst_r1, dst_c0:dst_c1]
        dst_data[valid] = src_data[valid].astype(self.data.dtype, copy=False)
        dst_mask[valid] = False


@dataclass(eq=False)
class RasterTile(Raster2D):
    """A grid-aligned chunk of raster output.

    ``index`` is the tile's position in stream order; ``grid_index`` is its
    (row, col) in the global tile grid.
    """

    index: int = 0
    grid_index: tuple[int, int] = (0, 0)

    @classmethod
    def from_raster(cls, raster: Raster2D, *, index: int, grid_index: tuple[int, int]) -> "RasterTile":
        return cls(
            geo_transform=raster.geo_transform,
            data=raster.data,
            nodata=raster.nodata,
            time=raster.time,
            mask=raster.mask,
            index=index,
            grid_index=grid_index,
        )
