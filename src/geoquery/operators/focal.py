"""Neighborhood statistics over a square moving window."""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from geoquery.datatypes.primitives import QueryRectangle
from geoquery.datatypes.raster import Raster2D, RasterDataType
from geoquery.engine.context import ExecutionContext
from geoquery.engine.operator import RasterOperator
from geoquery.engine.processor import QueryProcessor, RasterQueryProcessor
from geoquery.engine.tiling import TileInfo, region_geo_transform, region_shape
from geoquery.engine.types import OutputType, RasterResultDescriptor

STATISTICS: dict[str, Callable[..., np.ndarray]] = {
    "mean": np.nanmean,
    "min": np.nanmin,
    "max": np.nanmax,
    "sum": np.nansum,
}
MAX_RADIUS = 32


@dataclass(frozen=True)
class FocalAggregateParams:
    statistic: str = "mean"
    radius: int = 1


class FocalAggregate(RasterOperator):
    """Aggregates each pixel's (2r+1)x(2r+1) neighborhood, ignoring no-data neighbors."""

    tag = "FocalAggregate"
    source_types = (OutputType.RASTER,)
    params_schema = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "statistic": {"enum": sorted(STATISTICS)},
            "radius": {"type": "integer", "minimum": 1, "maximum": MAX_RADIUS},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> FocalAggregateParams:
        return FocalAggregateParams(
            statistic=raw.get("statistic", "mean"),
            radius=int(raw.get("radius", 1)),
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "FocalAggregateProcessor":
        return FocalAggregateProcessor(context, sources[0].as_raster(), self.params, path=self.path)


def focal_statistic(raster: Raster2D, statistic: str, radius: int) -> np.ndarray:
    """Apply the statistic to every full window of a padded raster.

    The result is ``2 * radius`` smaller than the input along each axis;
    windows without any valid pixel yield NaN.
    """
    values = raster.data.astype(np.float64)
    values[raster.mask] = np.nan
    size = 2 * radius + 1
    windows = sliding_window_view(values, (size, size))
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        result = STATISTICS[statistic](windows, axis=(-2, -1))
    if statistic == "sum":
        empty = np.isnan(windows).all(axis=(-2, -1))
        result = np.where(empty, np.nan, result)
    return np.asarray(result, dtype=np.float64)


class FocalAggregateProcessor(RasterQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        source: RasterQueryProcessor,
        params: FocalAggregateParams,
        *,
        path: str,
    ) -> None:
        super().__init__(
            context,
            RasterResultDescriptor(
                data_type=RasterDataType.F64,
                spatial_reference=source.result_descriptor.spatial_reference,
                nodata=math.nan,
            ),
            path=path,
        )
        self.source = source
        self.params = params

    def _aggregate(self, target: Raster2D, rect: QueryRectangle) -> Raster2D:
        radius = self.params.radius
        res_x = rect.resolution.x
        res_y = rect.resolution.y
        padded_rect = rect.with_bbox(target.bbox.expanded(radius * res_x, radius * res_y))
        padded = self.source.read_region(padded_rect)
        result = focal_statistic(padded, self.params.statistic, radius)
        rows, cols = target.shape
        result = result[:rows, :cols]
        center_nodata = padded.mask[radius : radius + rows, radius : radius + cols]
        mask = center_nodata | np.isnan(result)
        result[mask] = np.nan
        return Raster2D(
            geo_transform=target.geo_transform,
            data=result,
            nodata=math.nan,
            time=rect.time,
            mask=mask,
        )

    def compute_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        return self._aggregate(self.empty_tile(tile, rect), rect)

    def read_region(self, rect: QueryRectangle) -> Raster2D:
        target = Raster2D.empty(
            region_geo_transform(rect),
            region_shape(rect),
            dtype=np.float64,
            nodata=math.nan,
            time=rect.time,
        )
        return self._aggregate(target, rect)
