from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterable, Tuple

import numpy as np
import rasterio
from rasterio.transform import from_bounds

from geoquery.datatypes.primitives import QueryRectangle, TimeInterval
from geoquery.engine.descriptor import parse
from geoquery.engine.operator import validate_and_build
from geoquery.engine.stream import ChunkFailure


def write_raster(
    path: Path,
    data: np.ndarray,
    *,
    bounds: Tuple[float, float, float, float],
    crs: str = "EPSG:4326",
    nodata: float | None = None,
) -> None:
    height, width = data.shape
    transform = from_bounds(*bounds, width=width, height=height)
    path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=height,
        width=width,
        count=1,
        dtype=data.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dataset:
        dataset.write(data, 1)


def with_src_env(base_env: dict[str, str] | None = None) -> dict[str, str]:
    """Return an environment with repo src/ on PYTHONPATH."""
    env = dict(base_env or os.environ)
    repo_root = Path(__file__).resolve().parents[1]
    src_path = repo_root / "src"
    if src_path.exists():
        existing = env.get("PYTHONPATH", "")
        entries = [entry for entry in existing.split(os.pathsep) if entry]
        src_str = str(src_path)
        if src_str not in entries:
            entries.insert(0, src_str)
        env["PYTHONPATH"] = os.pathsep.join(entries)
    return env


def rect(
    bounds: Tuple[float, float, float, float],
    *,
    resolution: float | tuple[float, float] = 1.0,
    crs: str = "EPSG:4326",
    time: TimeInterval | None = None,
) -> QueryRectangle:
    return QueryRectangle.create(bounds, resolution=resolution, spatial_reference=crs, time=time)


def mock_raster(
    data: list[list[Any]],
    *,
    origin: Tuple[float, float] = (0.0, 4.0),
    pixel: float = 1.0,
    nodata: float | None = None,
    crs: str = "EPSG:4326",
    **params: Any,
) -> dict[str, Any]:
    """Descriptor for a MockRasterSource anchored at ``origin`` (upper left)."""
    payload: dict[str, Any] = {
        "data": data,
        "geo_transform": [origin[0], pixel, 0.0, origin[1], 0.0, -pixel],
        "spatial_reference": crs,
    }
    if nodata is not None:
        payload["nodata"] = nodata
    payload.update(params)
    return {"type": "MockRasterSource", "params": payload}


def mock_points(
    points: Iterable[Tuple[float, float]],
    *,
    columns: dict[str, list[Any]] | None = None,
    crs: str = "EPSG:4326",
) -> dict[str, Any]:
    params: dict[str, Any] = {"points": [list(point) for point in points], "spatial_reference": crs}
    if columns:
        params["columns"] = columns
    return {"type": "MockPointSource", "params": params}


def workflow(output_type: str, operator: dict[str, Any]) -> dict[str, Any]:
    return {"type": output_type, "operator": operator}


def successes(items: Iterable[Any]) -> list[Any]:
    return [item for item in items if not isinstance(item, ChunkFailure)]


class FlakyDataset:
    """Wraps an open rasterio dataset; reads at or right of ``fail_from_col`` raise."""

    def __init__(self, dataset: Any, *, fail_from_col: float) -> None:
        self._dataset = dataset
        self.fail_from_col = fail_from_col
        self.reads = 0

    def read(self, *args: Any, **kwargs: Any) -> np.ndarray:
        self.reads += 1
        window = kwargs.get("window")
        if window is not None and window.col_off >= self.fail_from_col:
            raise OSError(f"Simulated I/O error at column {window.col_off}")
        return self._dataset.read(*args, **kwargs)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._dataset, name)


def build(registry: Any, operator: dict[str, Any], output_type: str = "Raster") -> Any:
    """Validate and build an operator tree from a raw descriptor."""
    return validate_and_build(parse(operator), output_type, registry)
