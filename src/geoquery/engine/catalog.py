"""Dataset catalog: maps dataset ids to raster files and their metadata."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import rasterio
from jsonschema import ValidationError
from rasterio.errors import RasterioError

from geoquery import contracts
from geoquery.datatypes.crs import crs_to_string
from geoquery.datatypes.raster import RasterDataType
from geoquery.errors import DatasetNotFoundError, DatasetOpenError

_METADATA_KEYS = ("spatial_reference", "resolution", "data_type", "band_count")


@dataclass(frozen=True)
class DatasetInfo:
    """Metadata for one catalog entry."""

    dataset_id: str
    location: Path
    spatial_reference: str
    resolution: tuple[float, float]
    data_type: RasterDataType
    nodata: float | None = None
    band_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "location": str(self.location),
            "spatial_reference": self.spatial_reference,
            "resolution": list(self.resolution),
            "data_type": self.data_type.value,
            "nodata": self.nodata,
            "band_count": self.band_count,
        }


def inspect_dataset(dataset_id: str, path: Path) -> DatasetInfo:
    """Read metadata for a dataset file on disk."""
    with rasterio.open(path) as dataset:
        if dataset.crs is None:
            raise ValueError(f"Dataset has no CRS: {path}")
        return DatasetInfo(
            dataset_id=dataset_id,
            location=Path(path),
            spatial_reference=crs_to_string(dataset.crs.to_string()),
            resolution=(abs(dataset.res[0]), abs(dataset.res[1])),
            data_type=RasterDataType.from_dtype(dataset.dtypes[0]),
            nodata=dataset.nodata,
            band_count=dataset.count,
        )


class DatasetCatalog:
    """Immutable id-to-dataset mapping with lazy metadata inspection.

    Entries that omit metadata are completed from the file the first time
    they are resolved.
    """

    def __init__(self, entries: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._entries = {key: dict(value) for key, value in (entries or {}).items()}
        self._resolved: dict[str, DatasetInfo] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_files(cls, paths: Mapping[str, str | Path]) -> "DatasetCatalog":
        """Build a catalog whose metadata is read from each file."""
        return cls({dataset_id: {"location": str(path)} for dataset_id, path in paths.items()})

    @classmethod
    def from_infos(cls, infos: Iterable[DatasetInfo]) -> "DatasetCatalog":
        return cls({info.dataset_id: info.to_dict() for info in infos})

    def __contains__(self, dataset_id: object) -> bool:
        return dataset_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def ids(self) -> list[str]:
        return sorted(self._entries)

    def resolve(self, dataset_id: str) -> DatasetInfo:
        """Return metadata for ``dataset_id``."""
        entry = self._entries.get(dataset_id)
        if entry is None:
            raise DatasetNotFoundError(
                f"Dataset not found in catalog: {dataset_id}", dataset_id=dataset_id
            )
        with self._lock:
            cached = self._resolved.get(dataset_id)
        if cached is not None:
            return cached
        info = self._build_info(dataset_id, entry)
        with self._lock:
            return self._resolved.setdefault(dataset_id, info)

    def _build_info(self, dataset_id: str, entry: Mapping[str, Any]) -> DatasetInfo:
        location = Path(entry["location"])
        if all(key in entry for key in _METADATA_KEYS):
            resolution = entry["resolution"]
            return DatasetInfo(
                dataset_id=dataset_id,
                location=location,
                spatial_reference=crs_to_string(entry["spatial_reference"]),
                resolution=(float(resolution[0]), float(resolution[1])),
                data_type=RasterDataType(entry["data_type"]),
                nodata=entry.get("nodata"),
                band_count=int(entry["band_count"]),
            )
        try:
            inspected = inspect_dataset(dataset_id, location)
        except (OSError, RasterioError, ValueError) as exc:
            raise DatasetOpenError(
                f"Failed to inspect dataset: {exc}", dataset_id=dataset_id
            ) from exc
        resolution = entry.get("resolution", inspected.resolution)
        return DatasetInfo(
            dataset_id=dataset_id,
            location=location,
            spatial_reference=crs_to_string(entry.get("spatial_reference", inspected.spatial_reference)),
            resolution=(float(resolution[0]), float(resolution[1])),
            data_type=RasterDataType(entry["data_type"]) if "data_type" in entry else inspected.data_type,
            nodata=entry["nodata"] if "nodata" in entry else inspected.nodata,
            band_count=int(entry.get("band_count", inspected.band_count)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"datasets": {key: dict(value) for key, value in sorted(self._entries.items())}}


def load_dataset_catalog(path: Path) -> DatasetCatalog:
    """Load a catalog JSON file; relative locations resolve against its folder."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to read dataset catalog {path}: {exc}") from exc
    try:
        contracts.validate_dataset_catalog(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid dataset catalog {path}: {exc.message}") from exc
    base = Path(path).resolve().parent
    entries: dict[str, dict[str, Any]] = {}
    for dataset_id, entry in payload.get("datasets", {}).items():
        location = Path(entry["location"])
        if not location.is_absolute():
            location = base / location
        entries[dataset_id] = {**entry, "location": str(location)}
    return DatasetCatalog(entries)
