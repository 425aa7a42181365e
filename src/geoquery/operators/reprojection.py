"""Raster and vector reprojection into a target spatial reference."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

import numpy as np
from pyproj.exceptions import ProjError
from rasterio.enums import Resampling
from rasterio.warp import reproject

from geoquery.datatypes.crs import crs_to_string, is_valid_crs, transform_bounds, transformer
from geoquery.datatypes.features import FeatureCollection
from geoquery.datatypes.primitives import BoundingBox2D, QueryRectangle, SpatialResolution
from geoquery.datatypes.raster import GeoTransform, Raster2D
from geoquery.engine.context import ExecutionContext
from geoquery.engine.kernels import IterationType, KernelProgram, VectorArgument
from geoquery.engine.operator import RasterOperator, VectorOperator
from geoquery.engine.processor import (
    BatchItem,
    QueryProcessor,
    RasterQueryProcessor,
    VectorQueryProcessor,
)
from geoquery.engine.registry import ParamValueError
from geoquery.engine.tiling import TileInfo, region_geo_transform, region_shape
from geoquery.engine.types import OutputType, RasterResultDescriptor, VectorResultDescriptor
from geoquery.errors import PartialReadError

WARP_RESAMPLING = ("nearest", "bilinear", "cubic")
DENSIFY_POINTS = 21

LOGGER = logging.getLogger(__name__)


def _target_reference(raw: Mapping[str, Any]) -> str:
    value = raw["target_spatial_reference"]
    if not is_valid_crs(value):
        raise ParamValueError("target_spatial_reference", f"Unknown spatial reference: {value}")
    return crs_to_string(value)


def source_rectangle(
    bbox: BoundingBox2D,
    shape: tuple[int, int],
    rect: QueryRectangle,
    source_reference: str,
) -> QueryRectangle | None:
    """Return the rectangle in the source reference covering ``bbox``.

    The source resolution keeps roughly the same pixel count as the target
    grid. Returns None when the box has no finite image in the source.
    """
    try:
        bounds = transform_bounds(
            bbox.as_tuple(), rect.spatial_reference, source_reference, densify_pts=DENSIFY_POINTS
        )
    except ProjError as exc:
        LOGGER.debug("Bounds %s have no image in %s: %s", bbox.as_tuple(), source_reference, exc)
        return None
    if not all(math.isfinite(value) for value in bounds):
        return None
    xmin, ymin, xmax, ymax = bounds
    if xmax <= xmin or ymax <= ymin:
        return None
    rows, cols = shape
    resolution = SpatialResolution((xmax - xmin) / cols, (ymax - ymin) / rows)
    return rect.reprojected(BoundingBox2D(xmin, ymin, xmax, ymax), resolution, source_reference)


@dataclass(frozen=True)
class RasterReprojectionParams:
    target_spatial_reference: str
    resampling: str = "nearest"


class RasterReprojection(RasterOperator):
    """Warps the source raster into the target spatial reference."""

    tag = "RasterReprojection"
    source_types = (OutputType.RASTER,)
    params_schema = {
        "type": "object",
        "required": ["target_spatial_reference"],
        "additionalProperties": False,
        "properties": {
            "target_spatial_reference": {"type": "string", "minLength": 1},
            "resampling": {"enum": list(WARP_RESAMPLING)},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> RasterReprojectionParams:
        return RasterReprojectionParams(
            target_spatial_reference=_target_reference(raw),
            resampling=raw.get("resampling", "nearest"),
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "RasterReprojectionProcessor":
        return RasterReprojectionProcessor(
            context, sources[0].as_raster(), self.params, path=self.path
        )


class RasterReprojectionProcessor(RasterQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        source: RasterQueryProcessor,
        params: RasterReprojectionParams,
        *,
        path: str,
    ) -> None:
        descriptor = source.result_descriptor
        super().__init__(
            context,
            RasterResultDescriptor(
                data_type=descriptor.data_type,
                spatial_reference=params.target_spatial_reference,
                nodata=descriptor.nodata,
            ),
            path=path,
        )
        self.source = source
        self.params = params
        self._resampling = Resampling[params.resampling]

    def _warp(self, geo_transform: GeoTransform, shape: tuple[int, int], rect: QueryRectangle) -> Raster2D:
        output = Raster2D.empty(
            geo_transform,
            shape,
            dtype=self.result_descriptor.data_type.dtype,
            nodata=self.result_descriptor.nodata,
            time=rect.time,
        )
        source_reference = self.source.result_descriptor.spatial_reference
        src_rect = source_rectangle(output.bbox, shape, rect, source_reference)
        if src_rect is None:
            return output
        src = self.source.read_region(src_rect)
        if src.is_empty():
            return output

        src_values = src.data.astype(np.float64)
        src_values[src.mask] = np.nan
        destination = np.full(shape, np.nan, dtype=np.float64)
        reproject(
            source=src_values,
            destination=destination,
            src_transform=src.geo_transform.to_affine(),
            src_crs=source_reference,
            src_nodata=np.nan,
            dst_transform=geo_transform.to_affine(),
            dst_crs=rect.spatial_reference,
            dst_nodata=np.nan,
            resampling=self._resampling,
        )
        valid = ~np.isnan(destination)
        output.data[valid] = destination[valid].astype(output.data.dtype)
        output.mask[valid] = False
        return output

    def compute_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        return self._warp(tile.geo_transform, tile.shape, rect)

    def read_region(self, rect: QueryRectangle) -> Raster2D:
        return self._warp(region_geo_transform(rect), region_shape(rect), rect)


@dataclass(frozen=True)
class VectorReprojectionParams:
    target_spatial_reference: str


class VectorReprojection(VectorOperator):
    """Transforms feature coordinates into the target spatial reference."""

    tag = "VectorReprojection"
    source_types = (OutputType.VECTOR,)
    params_schema = {
        "type": "object",
        "required": ["target_spatial_reference"],
        "additionalProperties": False,
        "properties": {
            "target_spatial_reference": {"type": "string", "minLength": 1},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> VectorReprojectionParams:
        return VectorReprojectionParams(target_spatial_reference=_target_reference(raw))

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "VectorReprojectionProcessor":
        return VectorReprojectionProcessor(
            context, sources[0].as_vector(), self.params, path=self.path
        )


class VectorReprojectionProcessor(VectorQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        source: VectorQueryProcessor,
        params: VectorReprojectionParams,
        *,
        path: str,
    ) -> None:
        descriptor = source.result_descriptor
        super().__init__(
            context,
            VectorResultDescriptor(
                data_type=descriptor.data_type,
                spatial_reference=params.target_spatial_reference,
                columns=dict(descriptor.columns),
            ),
            path=path,
        )
        self.source = source
        self.source_reference = descriptor.spatial_reference
        program = KernelProgram(IterationType.VECTOR_COORDINATES)
        program.add_input_features(VectorArgument(descriptor.data_type, descriptor.columns))
        program.add_output_features(VectorArgument(descriptor.data_type, descriptor.columns))
        project = transformer(self.source_reference, params.target_spatial_reference).transform
        self.kernel = program.compile(project, "reproject_coordinates")
        self.queue = context.acquire_device_queue()

    def batches(self, rect: QueryRectangle) -> Iterator[BatchItem]:
        rows, cols = region_shape(rect)
        src_rect = source_rectangle(rect.bbox, (rows, cols), rect, self.source_reference)
        if src_rect is None:
            yield FeatureCollection.empty(self.result_descriptor.columns)
            return
        for batch in self.source.batches(src_rect):
            if isinstance(batch, PartialReadError):
                yield batch
                continue
            projected = self.kernel.run_coordinates(self.queue, batch)
            yield projected.filter_bbox(rect.bbox)
