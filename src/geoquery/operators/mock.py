"""Deterministic in-memory sources for tests and examples."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

import numpy as np

from geoquery.datatypes.crs import crs_to_string, is_valid_crs
from geoquery.datatypes.features import FeatureCollection, VectorDataType
from geoquery.datatypes.primitives import QueryRectangle
from geoquery.datatypes.raster import GeoTransform, Raster2D, RasterDataType
from geoquery.engine.context import ExecutionContext
from geoquery.engine.operator import RasterOperator, VectorOperator
from geoquery.engine.processor import QueryProcessor, RasterQueryProcessor, VectorQueryProcessor
from geoquery.engine.registry import ParamValueError
from geoquery.engine.tiling import TileInfo
from geoquery.engine.types import RasterResultDescriptor, VectorResultDescriptor
from geoquery.errors import PartialReadError

_DATA_TYPES = [member.value for member in RasterDataType]


def _spatial_reference(raw: Mapping[str, Any]) -> str:
    value = raw.get("spatial_reference", "EPSG:4326")
    if not is_valid_crs(value):
        raise ParamValueError("spatial_reference", f"Unknown spatial reference: {value}")
    return crs_to_string(value)


@dataclass(frozen=True)
class MockRasterSourceParams:
    data: np.ndarray
    geo_transform: GeoTransform
    data_type: RasterDataType
    nodata: float | None = None
    spatial_reference: str = "EPSG:4326"
    fail_tiles: frozenset[int] = field(default_factory=frozenset)


class MockRasterSource(RasterOperator):
    """Serves a static grid; listed tile indices fail with a read error."""

    tag = "MockRasterSource"
    params_schema = {
        "type": "object",
        "required": ["data", "geo_transform"],
        "additionalProperties": False,
        "properties": {
            "data": {
                "type": "array",
                "minItems": 1,
                "items": {"type": "array", "minItems": 1, "items": {"type": ["number", "null"]}},
            },
            "geo_transform": {
                "type": "array",
                "items": {"type": "number"},
                "minItems": 6,
                "maxItems": 6,
            },
            "data_type": {"enum": _DATA_TYPES},
            "nodata": {"type": ["number", "null"]},
            "spatial_reference": {"type": "string"},
            "fail_tiles": {"type": "array", "items": {"type": "integer", "minimum": 0}},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> MockRasterSourceParams:
        rows = raw["data"]
        if len({len(row) for row in rows}) != 1:
            raise ParamValueError("data", "All rows must have the same length")
        data_type = RasterDataType(raw.get("data_type", "F64"))
        nodata = raw.get("nodata")
        if any(value is None for row in rows for value in row):
            if nodata is None:
                raise ParamValueError("nodata", "Null pixels require a nodata value")
            rows = [[nodata if value is None else value for value in row] for row in rows]
        gdal = raw["geo_transform"]
        if gdal[1] <= 0 or gdal[5] >= 0:
            raise ParamValueError("geo_transform", "Expected a north-up transform")
        return MockRasterSourceParams(
            data=np.asarray(rows, dtype=data_type.dtype),
            geo_transform=GeoTransform.from_gdal(gdal),
            data_type=data_type,
            nodata=nodata,
            spatial_reference=_spatial_reference(raw),
            fail_tiles=frozenset(raw.get("fail_tiles", ())),
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "MockRasterSourceProcessor":
        return MockRasterSourceProcessor(context, self.params, path=self.path)


class MockRasterSourceProcessor(RasterQueryProcessor):
    def __init__(
        self, context: ExecutionContext, params: MockRasterSourceParams, *, path: str
    ) -> None:
        super().__init__(
            context,
            RasterResultDescriptor(
                data_type=params.data_type,
                spatial_reference=params.spatial_reference,
                nodata=params.nodata,
            ),
            path=path,
        )
        self.params = params
        self.raster = Raster2D(
            geo_transform=params.geo_transform,
            data=params.data,
            nodata=params.nodata,
        )

    def compute_tile(self, tile: TileInfo, rect: QueryRectangle) -> Raster2D:
        if tile.index in self.params.fail_tiles:
            raise PartialReadError(
                f"Simulated read failure for tile {tile.grid_index}",
                operator_path=self.path,
                tile_index=tile.index,
            )
        return self.raster.sample_nearest(tile.geo_transform, tile.shape, time=rect.time)


@dataclass(frozen=True)
class MockPointSourceParams:
    points: np.ndarray
    columns: Mapping[str, np.ndarray] = field(default_factory=dict)
    spatial_reference: str = "EPSG:4326"


class MockPointSource(VectorOperator):
    """Serves static points filtered to the query box."""

    tag = "MockPointSource"
    params_schema = {
        "type": "object",
        "required": ["points"],
        "additionalProperties": False,
        "properties": {
            "points": {
                "type": "array",
                "items": {
                    "type": "array",
                    "items": {"type": "number"},
                    "minItems": 2,
                    "maxItems": 2,
                },
            },
            "columns": {
                "type": "object",
                "additionalProperties": {
                    "type": "array",
                    "items": {"type": ["number", "string"]},
                },
            },
            "spatial_reference": {"type": "string"},
        },
    }

    @classmethod
    def parse_params(cls, raw: Mapping[str, Any]) -> MockPointSourceParams:
        points = np.asarray(raw["points"], dtype=np.float64).reshape(-1, 2)
        columns: dict[str, np.ndarray] = {}
        for name, values in raw.get("columns", {}).items():
            if len(values) != len(points):
                raise ParamValueError(
                    f"columns.{name}", f"Expected {len(points)} values, got {len(values)}"
                )
            columns[name] = np.asarray(values)
        return MockPointSourceParams(
            points=points,
            columns=columns,
            spatial_reference=_spatial_reference(raw),
        )

    def create_processor(
        self, context: ExecutionContext, sources: tuple[QueryProcessor, ...]
    ) -> "MockPointSourceProcessor":
        return MockPointSourceProcessor(context, self.params, path=self.path)


class MockPointSourceProcessor(VectorQueryProcessor):
    def __init__(
        self, context: ExecutionContext, params: MockPointSourceParams, *, path: str
    ) -> None:
        self.collection = FeatureCollection(
            coordinates=params.points,
            columns=dict(params.columns),
            data_type=VectorDataType.MULTI_POINT,
        )
        super().__init__(
            context,
            VectorResultDescriptor(
                data_type=VectorDataType.MULTI_POINT,
                spatial_reference=params.spatial_reference,
                columns=self.collection.column_types(),
            ),
            path=path,
        )

    def batches(self, rect: QueryRectangle) -> Iterator[FeatureCollection]:
        selected = self.collection.filter_bbox(rect.bbox)
        if selected.is_empty():
            yield selected
            return
        yield from selected.batches(self.context.feature_batch_size)
