from __future__ import annotations

import numpy as np
import pytest
import rasterio

from geoquery.engine.context import DatasetHandleCache
from geoquery.engine.processor import QueryOptions
from geoquery.engine.stream import ChunkFailure
from geoquery.errors import DatasetNotFoundError, InstantiationError, PartialReadError
from tests.utils import FlakyDataset, build, rect, successes


def _source(**params) -> dict:
    params.setdefault("dataset", "dem")
    return {"type": "GdalSource", "params": params}


def test_reads_tiles_with_nodata(registry, make_context, dem_catalog) -> None:
    processor = build(registry, _source()).instantiate(make_context(dem_catalog))
    assert processor.result_descriptor.nodata == -9999.0
    tiles = processor.query(rect((0.0, 0.0, 4.0, 4.0))).collect()
    assert len(tiles) == 4
    first = tiles[0]
    assert first.data.dtype == np.float32
    assert first.mask.tolist() == [[True, False], [False, False]]
    assert first.data.tolist() == [[-9999.0, 1.0], [4.0, 5.0]]
    assert tiles[3].data.tolist() == [[10.0, 11.0], [14.0, 15.0]]


def test_tiles_outside_dataset_are_empty(registry, make_context, dem_catalog) -> None:
    processor = build(registry, _source()).instantiate(make_context(dem_catalog))
    tiles = processor.query(rect((4.0, 4.0, 8.0, 8.0))).collect()
    assert len(tiles) == 4
    assert all(tile.is_empty() for tile in tiles)


def test_read_region_partially_outside(registry, make_context, dem_catalog) -> None:
    processor = build(registry, _source()).instantiate(make_context(dem_catalog))
    region = processor.read_region(rect((2.0, 2.0, 6.0, 6.0)))
    assert region.shape == (4, 4)
    assert region.data[2:, :2].tolist() == [[10.0, 11.0], [14.0, 15.0]]
    assert region.mask[:2].all()
    assert region.mask[:, 2:].all()


def test_coarser_resolution_averages(registry, make_context, dem_catalog) -> None:
    operator = build(registry, _source(resampling="average"))
    processor = operator.instantiate(make_context(dem_catalog))
    tiles = processor.query(rect((0.0, 0.0, 4.0, 4.0), resolution=2.0)).collect()
    assert len(tiles) == 1
    data = tiles[0].data
    assert data[0, 1] == pytest.approx(4.5)
    assert data[1, 0] == pytest.approx(10.5)
    assert data[1, 1] == pytest.approx(12.5)


def test_missing_band_fails_instantiation(registry, make_context, dem_catalog, dataset_cache) -> None:
    with pytest.raises(InstantiationError) as excinfo:
        build(registry, _source(band=2)).instantiate(make_context(dem_catalog))
    assert excinfo.value.dataset_id == "dem"
    assert dataset_cache.opens == 0


def test_missing_dataset_fails_before_any_tile(registry, make_context, dataset_cache) -> None:
    context = make_context()
    with pytest.raises(InstantiationError) as excinfo:
        build(registry, _source(dataset="nope")).instantiate(context)
    assert excinfo.value.dataset_id == "nope"
    assert excinfo.value.operator_path == "GdalSource"
    assert isinstance(excinfo.value.__cause__, DatasetNotFoundError)
    assert dataset_cache.opens == 0


def test_unreadable_file_fails_instantiation(registry, make_context, tmp_path) -> None:
    from geoquery.engine.catalog import DatasetCatalog

    (tmp_path / "broken.tif").write_bytes(b"not a tiff")
    catalog = DatasetCatalog.from_files({"broken": tmp_path / "broken.tif"})
    with pytest.raises(InstantiationError):
        build(registry, _source(dataset="broken")).instantiate(make_context(catalog))


def _flaky_context(make_context, dem_catalog, **kwargs):
    cache = DatasetHandleCache(
        opener=lambda info: FlakyDataset(rasterio.open(info.location), fail_from_col=2)
    )
    return make_context(dem_catalog, dataset_cache=cache, **kwargs), cache


def test_read_failure_affects_only_its_tiles(registry, make_context, dem_catalog) -> None:
    context, cache = _flaky_context(make_context, dem_catalog)
    processor = build(registry, _source()).instantiate(context)
    items = processor.query(rect((0.0, 0.0, 4.0, 4.0))).collect()
    failures = [item for item in items if isinstance(item, ChunkFailure)]
    assert [failure.index for failure in failures] == [1, 3]
    assert failures[0].error.dataset_id == "dem"
    assert failures[0].error.operator_path == "GdalSource"
    assert [tile.index for tile in successes(items)] == [0, 2]
    context.close()
    assert cache.refcount("dem") == 0


def test_read_failure_is_fatal_in_strict_mode(registry, make_context, dem_catalog) -> None:
    context, _ = _flaky_context(make_context, dem_catalog)
    processor = build(registry, _source()).instantiate(context)
    stream = processor.query(rect((0.0, 0.0, 4.0, 4.0)), QueryOptions(strict=True))
    assert next(stream).index == 0
    with pytest.raises(PartialReadError) as excinfo:
        next(stream)
    assert excinfo.value.tile_index == 1
