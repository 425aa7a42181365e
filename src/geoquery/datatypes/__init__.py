"""Geospatial primitive types used by the engine."""

from geoquery.datatypes.crs import crs_to_string, normalize_crs, transform_bounds, transformer
from geoquery.datatypes.features import FeatureCollection, FeatureDataType, VectorDataType
from geoquery.datatypes.primitives import (
    BoundingBox2D,
    Coordinate2D,
    QueryRectangle,
    SpatialResolution,
    TimeInterval,
)
from geoquery.datatypes.raster import (
    GeoTransform,
    Raster2D,
    RasterDataType,
    RasterTile,
    nodata_mask,
)

__all__ = [
    "BoundingBox2D",
    "Coordinate2D",
    "FeatureCollection",
    "FeatureDataType",
    "GeoTransform",
    "QueryRectangle",
    "Raster2D",
    "RasterDataType",
    "RasterTile",
    "SpatialResolution",
    "TimeInterval",
    "VectorDataType",
    "crs_to_string",
    "nodata_mask",
    "normalize_crs",
    "transform_bounds",
    "transformer",
]
