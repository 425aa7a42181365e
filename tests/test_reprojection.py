from __future__ import annotations

import numpy as np
import pytest

from geoquery.datatypes.features import FeatureDataType
from geoquery.errors import ParameterError
from geoquery.operators.reprojection import source_rectangle
from tests.utils import build, mock_points, mock_raster, rect

GRID = [[float(4 * row + col) for col in range(4)] for row in range(4)]


def _raster_reprojection(source: dict, target: str = "EPSG:3857", **params) -> dict:
    return {
        "type": "RasterReprojection",
        "params": {"target_spatial_reference": target, **params},
        "children": [source],
    }


def _vector_reprojection(source: dict, target: str = "EPSG:3857") -> dict:
    return {
        "type": "VectorReprojection",
        "params": {"target_spatial_reference": target},
        "children": [source],
    }


def test_source_rectangle_maps_bounds_and_resolution() -> None:
    query = rect((0.0, 0.0, 200_000.0, 100_000.0), resolution=50_000.0, crs="EPSG:3857")
    source = source_rectangle(query.bbox, (2, 4), query, "EPSG:4326")
    assert source is not None
    assert source.spatial_reference == "EPSG:4326"
    assert source.bbox.xmax == pytest.approx(1.7966, abs=1e-3)
    assert source.resolution.x == pytest.approx(source.bbox.width / 4)


def test_raster_is_warped_into_target(registry, make_context) -> None:
    processor = build(registry, _raster_reprojection(mock_raster(GRID))).instantiate(
        make_context()
    )
    assert processor.result_descriptor.spatial_reference == "EPSG:3857"
    region = processor.read_region(
        rect((130_000.0, 130_000.0, 200_000.0, 200_000.0), resolution=35_000.0, crs="EPSG:3857")
    )
    assert region.shape == (2, 2)
    assert not region.mask.any()
    # Longitude 1..2 and latitude 1..2 fall in row 2, column 1 of the source grid.
    assert np.all(region.data == 9.0)


def test_warped_tiles_stream_in_target_reference(registry, make_context) -> None:
    processor = build(registry, _raster_reprojection(mock_raster(GRID))).instantiate(
        make_context()
    )
    tiles = processor.query(
        rect((0.0, 0.0, 400_000.0, 400_000.0), resolution=100_000.0, crs="EPSG:3857")
    ).collect()
    assert len(tiles) == 4
    assert all(tile.geo_transform.x_pixel_size == 100_000.0 for tile in tiles)
    assert not tiles[0].is_empty()


def test_raster_outside_source_is_empty(registry, make_context) -> None:
    processor = build(registry, _raster_reprojection(mock_raster(GRID))).instantiate(
        make_context()
    )
    region = processor.read_region(
        rect((5_000_000.0, 5_000_000.0, 5_100_000.0, 5_100_000.0), resolution=50_000.0, crs="EPSG:3857")
    )
    assert region.is_empty()


def test_source_reference_query_is_rejected(registry, make_context) -> None:
    from geoquery.errors import InvalidQueryError

    processor = build(registry, _raster_reprojection(mock_raster(GRID))).instantiate(
        make_context()
    )
    with pytest.raises(InvalidQueryError):
        processor.query(rect((0.0, 0.0, 4.0, 4.0)))


def test_unknown_target_reference_fails_validation(registry) -> None:
    with pytest.raises(ParameterError) as excinfo:
        build(registry, _raster_reprojection(mock_raster(GRID), target="EPSG:0"))
    assert excinfo.value.field == "target_spatial_reference"


def test_points_are_projected(registry, make_context) -> None:
    raw = _vector_reprojection(mock_points([(0.0, 0.0), (1.0, 1.0), (5.0, 5.0)], columns={"id": [1, 2, 3]}))
    processor = build(registry, raw, "Vector").instantiate(make_context())
    batches = processor.query(
        rect((-1_000.0, -1_000.0, 200_000.0, 200_000.0), crs="EPSG:3857")
    ).collect()
    assert [batch.index for batch in batches] == [0]
    batch = batches[0]
    assert batch.columns["id"].tolist() == [1, 2]
    np.testing.assert_allclose(
        batch.coordinates, [[0.0, 0.0], [111_319.490793, 111_325.142866]], atol=1e-3
    )


def test_vector_reprojection_keeps_column_types(registry, make_context) -> None:
    raw = _vector_reprojection(mock_points([(0.0, 0.0)], columns={"name": ["a"]}))
    processor = build(registry, raw, "Vector").instantiate(make_context())
    assert processor.result_descriptor.spatial_reference == "EPSG:3857"
    assert processor.result_descriptor.columns == {"name": FeatureDataType.TEXT}
