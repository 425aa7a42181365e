"""Engine configuration loading and normalization helpers."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

from geoquery.contracts import validate_engine_config
from geoquery.datatypes.primitives import Coordinate2D
from geoquery.engine.device import SUPPORTED_DEVICES
from geoquery.engine.tiling import DEFAULT_TILE_SHAPE, TilingSpecification

ENV_CONFIG_PATH = "GEOQUERY_CONFIG"


@dataclass(frozen=True)
class EngineConfig:
    """Normalized engine configuration.

    ``max_workers=0`` sizes the task pool to the CPU count. ``device`` is
    only checked when a query first acquires its device queue.
    """

    max_workers: int = 0
    high_water_mark: int = 8
    tile_size: tuple[int, int] = DEFAULT_TILE_SHAPE
    tiling_origin: tuple[float, float] = (0.0, 0.0)
    feature_batch_size: int = 1024
    strict: bool = False
    timeout: float | None = None
    device: str = SUPPORTED_DEVICES[0]
    catalog_path: str | None = None

    def __post_init__(self) -> None:
        if self.max_workers < 0:
            raise ValueError("max_workers must be >= 0")
        if self.high_water_mark < 1:
            raise ValueError("high_water_mark must be >= 1")
        if self.feature_batch_size < 1:
            raise ValueError("feature_batch_size must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["tile_size"] = list(self.tile_size)
        payload["tiling_origin"] = list(self.tiling_origin)
        return payload

    def worker_count(self) -> int:
        """Return the task pool size, resolving 0 to the CPU count."""
        return coerce_max_workers(self.max_workers)

    def tiling(self) -> TilingSpecification:
        origin_x, origin_y = self.tiling_origin
        return TilingSpecification(
            origin=Coordinate2D(origin_x, origin_y),
            tile_shape=self.tile_size,
        )


def coerce_max_workers(max_workers: int) -> int:
    """Normalize the requested worker count."""
    workers = int(max_workers)
    if workers < 0:
        raise ValueError("max_workers must be >= 0")
    if workers == 0:
        return os.cpu_count() or 1
    return workers


def normalize_engine_config(payload: Mapping[str, Any]) -> EngineConfig:
    """Validate a raw config payload and return the normalized config."""
    validate_engine_config(payload)
    defaults = EngineConfig()
    tile_rows, tile_cols = payload.get("tile_size", defaults.tile_size)
    origin_x, origin_y = payload.get("tiling_origin", defaults.tiling_origin)
    timeout = payload.get("timeout", defaults.timeout)
    catalog_path = payload.get("catalog_path", defaults.catalog_path)
    return EngineConfig(
        max_workers=int(payload.get("max_workers", defaults.max_workers)),
        high_water_mark=int(payload.get("high_water_mark", defaults.high_water_mark)),
        tile_size=(int(tile_rows), int(tile_cols)),
        tiling_origin=(float(origin_x), float(origin_y)),
        feature_batch_size=int(payload.get("feature_batch_size", defaults.feature_batch_size)),
        strict=bool(payload.get("strict", defaults.strict)),
        timeout=float(timeout) if timeout is not None else None,
        device=str(payload.get("device", defaults.device)),
        catalog_path=str(catalog_path) if catalog_path else None,
    )


def load_engine_config(path: Path | None = None) -> EngineConfig:
    """Load engine config from ``path``, ``$GEOQUERY_CONFIG``, or defaults.

    A relative ``catalog_path`` is resolved against the config file.
    """
    if path is None:
        env_path = os.environ.get(ENV_CONFIG_PATH)
        if not env_path:
            return EngineConfig()
        path = Path(env_path)
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, Mapping):
        raise TypeError("Engine config must be a JSON object.")
    config = normalize_engine_config(payload)
    if config.catalog_path and not Path(config.catalog_path).is_absolute():
        resolved = (Path(path).parent / config.catalog_path).resolve()
        config = EngineConfig(**{**asdict(config), "catalog_path": str(resolved)})
    return config
