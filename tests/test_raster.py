from __future__ import annotations

import numpy as np
import pytest

from geoquery.datatypes.raster import GeoTransform, Raster2D

GRID = GeoTransform.new_with_coordinate_x_y(0.0, 1.0, 2.0, -1.0)


def test_mask_is_derived_from_nodata() -> None:
    raster = Raster2D(GRID, np.array([[1, 0], [0, 2]], dtype=np.uint8), nodata=0)
    assert raster.mask.dtype == bool
    assert raster.mask.tolist() == [[False, True], [True, False]]


def test_mask_without_nodata_is_all_valid() -> None:
    raster = Raster2D(GRID, np.ones((2, 2), dtype=np.float32))
    assert not raster.mask.any()
    assert not raster.is_empty()


def test_mask_shape_must_match_data() -> None:
    with pytest.raises(ValueError):
        Raster2D(GRID, np.ones((2, 2)), mask=np.zeros((1, 2), dtype=bool))


def test_blit_copies_only_valid_pixels() -> None:
    target = Raster2D.empty(GRID, (2, 2), dtype=np.float64, nodata=-1.0)
    source = Raster2D(
        GeoTransform.new_with_coordinate_x_y(1.0, 1.0, 2.0, -1.0),
        np.array([[5.0], [-1.0]]),
        nodata=-1.0,
    )
    target.blit(source)
    assert target.data.tolist() == [[-1.0, 5.0], [-1.0, -1.0]]
    assert target.mask.tolist() == [[True, False], [True, True]]
