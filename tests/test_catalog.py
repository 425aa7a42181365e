from __future__ import annotations

import json
import shutil
from pathlib import Path

import numpy as np
import pytest

from geoquery.datatypes.raster import RasterDataType
from geoquery.engine.catalog import DatasetCatalog, inspect_dataset, load_dataset_catalog
from geoquery.errors import DatasetNotFoundError, DatasetOpenError
from tests.utils import write_raster

FIXTURES = Path(__file__).parent / "fixtures"


def test_inspect_dataset_reads_metadata(tmp_path: Path) -> None:
    path = tmp_path / "dem.tif"
    write_raster(path, np.zeros((4, 8), dtype=np.int16), bounds=(0.0, 0.0, 4.0, 2.0), nodata=-1)
    info = inspect_dataset("dem", path)
    assert info.spatial_reference == "EPSG:4326"
    assert info.resolution == (0.5, 0.5)
    assert info.data_type is RasterDataType.I16
    assert info.nodata == -1
    assert info.band_count == 1


def test_catalog_inspects_files_lazily(dem_catalog) -> None:
    assert dem_catalog.ids() == ["dem"]
    info = dem_catalog.resolve("dem")
    assert info.data_type is RasterDataType.F32
    assert info.nodata == -9999.0
    assert dem_catalog.resolve("dem") is info


def test_catalog_metadata_overrides_file(dem_catalog) -> None:
    location = dem_catalog.resolve("dem").location
    catalog = DatasetCatalog({"dem": {"location": str(location), "nodata": None}})
    assert catalog.resolve("dem").nodata is None


def test_complete_entries_skip_inspection(tmp_path: Path) -> None:
    catalog = DatasetCatalog(
        {
            "remote": {
                "location": str(tmp_path / "missing.tif"),
                "spatial_reference": "epsg:3857",
                "resolution": [10, 10],
                "data_type": "U8",
                "band_count": 3,
            }
        }
    )
    info = catalog.resolve("remote")
    assert info.spatial_reference == "EPSG:3857"
    assert info.band_count == 3
    assert info.resolution == (10.0, 10.0)


def test_unknown_dataset(dem_catalog) -> None:
    with pytest.raises(DatasetNotFoundError) as excinfo:
        dem_catalog.resolve("nope")
    assert excinfo.value.dataset_id == "nope"


def test_missing_file_is_open_error(tmp_path: Path) -> None:
    catalog = DatasetCatalog.from_files({"gone": tmp_path / "gone.tif"})
    with pytest.raises(DatasetOpenError):
        catalog.resolve("gone")


def test_load_catalog_resolves_relative_locations(tmp_path: Path) -> None:
    shutil.copy(FIXTURES / "dataset_catalog.json", tmp_path / "catalog.json")
    catalog = load_dataset_catalog(tmp_path / "catalog.json")
    assert catalog.ids() == ["dem", "ortho"]
    info = catalog.resolve("dem")
    assert info.location == tmp_path.resolve() / "dem.tif"
    assert info.data_type is RasterDataType.F32
    assert catalog.to_dict()["datasets"]["ortho"]["location"] == str(Path("/data/ortho.tif"))


def test_load_catalog_rejects_invalid(tmp_path: Path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"datasets": {"dem": {"path": "dem.tif"}}}), encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid dataset catalog"):
        load_dataset_catalog(path)
    path.write_text("{", encoding="utf-8")
    with pytest.raises(ValueError, match="Failed to read"):
        load_dataset_catalog(path)


def test_catalog_round_trips_infos(dem_catalog) -> None:
    info = dem_catalog.resolve("dem")
    rebuilt = DatasetCatalog.from_infos([info])
    assert rebuilt.resolve("dem") == info
