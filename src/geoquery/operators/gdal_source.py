"""Native raster source backed by rasterio dataset handles."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from rasterio.enums import Resampling
from rasterio.errors import RasterioError
from rasterio.windows import Window, from_bounds

from geoquery.datatypes.primitives import BoundingBox2D, QueryRectangle
from geoquery.datatypes.raster import GeoTransform, Raster2D, nodata_mask
from geoquery.engine.catalog import DatasetInfo
from geoquery.engine.context import DatasetHandle, ExecutionContext
from geoquery.engine.operator import RasterOperator
from geoquery.engine.processor import QueryProcessor, RasterQueryProcessor
from geoquery.engine.tiling import TileInfo, region_geo_transform, region_shape
from geoquery.engine.types import RasterResultDescriptor
from geoquery.errors import InstantiationError, PartialReadError
from geoquery.logging_utils import log_context

RESAMPLING_METHODS = ("nearest", "bilinear", "cubic", "average")

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GdalSourceParams:
    dataset: str
    band: int = 1
    resampling: str = "nearest"


class GdalSource(RasterOperator):
    """Reads one band of a catalog dataset tile by tile."""

    tag = "GdalSource"
    params_schema = {
        "type": "object",
        "required": ["dataset"],
        "additionalProperties": False,
        "properties": {
            "dataset": {"type": "string", "minLength": 1},
            "band": {"type": "integer", "minimum": 1},
            "resampling": {"enum": list(RESAMPLING_METHODS)},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> GdalSourceParams:
        return GdalSourceParams(
            dataset=raw["dataset"],
            band=int(raw.get("band", 1)),
            resampling=raw.get("resampling", "nearest"),
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "GdalSourceProcessor":
        params: GdalSourceParams = self.params
        info = context.dataset_info(params.dataset)
        if params.band > info.band_count:
            raise InstantiationError(
                f"Band {params.band} requested but dataset has {info.band_count}",
                operator_path=self.path,
                dataset_id=info.dataset_id,
            )
        handle = context.resolve_dataset(params.dataset)
        LOGGER.debug("Bound dataset %s at %s", info.dataset_id, info.location, extra=log_context(self.path))
        return GdalSourceProcessor(context, info, handle, params, path=self.path)


class GdalSourceProcessor(RasterQueryProcessor):
    def __init__(
        self,
        context: ExecutionContext,
        info: DatasetInfo,
        handle: DatasetHandle,
        params: GdalSourceParams,
        *,
        path: str,
    ) -> None:
        super().__init__(
            context,
            RasterResultDescriptor(
                data_type=info.data_type,
                spatial_reference=info.spatial_reference,
                nodata=info.nodata,
            ),
            path=path,
        )
        self.info = info
        self.handle = handle
        self.params = params
        self._resampling = Resampling[params.resampling]

    def compute_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        try:
            return self._read(tile.geo_transform, tile.shape, rect)
        except (OSError, RasterioError) as exc:
            raise PartialReadError(
                f"Failed to read tile {tile.grid_index}: {exc}",
                operator_path=self.path,
                tile_index=tile.index,
                dataset_id=self.info.dataset_id,
            ) from exc

    def read_region(self, rect: QueryRectangle) -> Raster2D:
        try:
            return self._read(region_geo_transform(rect), region_shape(rect), rect)
        except (OSError, RasterioError) as exc:
            raise PartialReadError(
                f"Failed to read region {rect.bbox.as_tuple()}: {exc}",
                operator_path=self.path,
                dataset_id=self.info.dataset_id,
            ) from exc

    def _read(self, geo_transform: GeoTransform, shape: tuple[int, int], rect: QueryRectangle) -> Raster2D:
        """Read the part of the dataset under a target grid; the rest stays no-data."""
        output = Raster2D.empty(
            geo_transform,
            shape,
            dtype=self.info.data_type.dtype,
            nodata=self.info.nodata,
            time=rect.time,
        )
        target = geo_transform.bounds(shape)
        overlap = target.intersection(BoundingBox2D(*self.handle.bounds))
        if overlap is None:
            return output

        res_x = abs(geo_transform.x_pixel_size)
        res_y = abs(geo_transform.y_pixel_size)
        col0 = round((overlap.xmin - target.xmin) / res_x)
        col1 = round((overlap.xmax - target.xmin) / res_x)
        row0 = round((target.ymax - overlap.ymax) / res_y)
        row1 = round((target.ymax - overlap.ymin) / res_y)
        if col1 <= col0 or row1 <= row0:
            return output
        # Snap the overlap to whole target pixels before mapping it into the dataset.
        snapped = BoundingBox2D(
            target.xmin + col0 * res_x,
            target.ymax - row1 * res_y,
            target.xmin + col1 * res_x,
            target.ymax - row0 * res_y,
        )
        height, width = self.handle.shape
        window = from_bounds(*snapped.as_tuple(), transform=self.handle.transform).intersection(
            Window(0, 0, width, height)
        )
        data = self.handle.read(
            self.params.band,
            window=window,
            out_shape=(row1 - row0, col1 - col0),
            resampling=self._resampling,
        )
        output.data[row0:row1, col0:col1] = data.astype(output.data.dtype, copy=False)
        output.mask[row0:row1, col0:col1] = nodata_mask(data, self.info.nodata)
        if self.info.nodata is not None:
            output.data[output.mask] = self.info.nodata
        return output

