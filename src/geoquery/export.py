"""Write query results to GeoTIFF and GeoJSON."""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Iterable

import numpy as np
import rasterio

from geoquery.datatypes.features import FeatureCollection
from geoquery.datatypes.raster import Raster2D


def write_geotiff(raster: Raster2D, path: Path, spatial_reference: str) -> Path:
    """Write a single-band raster; masked pixels hold the no-data value."""
    rows, cols = raster.shape
    data = raster.data
    nodata = raster.nodata
    if nodata is None and raster.mask.any():
        data = data.astype(np.float64)
        nodata = math.nan
    data = np.array(data, copy=True)
    if nodata is not None:
        data[raster.mask] = nodata
    meta = {
        "driver": "GTiff",
        "height": rows,
        "width": cols,
        "count": 1,
        "dtype": data.dtype.name,
        "crs": spatial_reference,
        "transform": raster.geo_transform.to_affine(),
        "nodata": nodata,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(path, "w", **meta) as dest:
        dest.write(data, 1)
    return path


def _json_value(value: Any) -> Any:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def feature_collection_to_geojson(batches: Iterable[FeatureCollection]) -> dict[str, Any]:
    """Merge batches into one GeoJSON FeatureCollection of MultiPoint features."""
    features: list[dict[str, Any]] = []
    for batch in batches:
        for position, (x, y) in enumerate(batch):
            properties = {
                name: _json_value(values[position]) for name, values in batch.columns.items()
            }
            features.append(
                {
                    "type": "Feature",
                    "geometry": {"type": batch.data_type.value, "coordinates": [[x, y]]},
                    "properties": properties,
                }
            )
    return {"type": "FeatureCollection", "features": features}


def write_geojson(batches: Iterable[FeatureCollection], path: Path) -> Path:
    payload = feature_collection_to_geojson(batches)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path
