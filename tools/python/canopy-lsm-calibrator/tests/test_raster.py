"""
Tests — Classified Raster
=========================
Unit tests for :mod:`canopy_lsm.raster`.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

from canopy_lsm.raster import INVALID_CELL, ClassifiedRaster, LandCoverClass, class_proportions
from shared.python.exceptions import InputValidationError, RasterError


def _write(path: Path, data: np.ndarray, *, nodata: int | None = None, cell: tuple[float, float] = (0.6, 0.6)) -> Path:
    count = 1 if data.ndim == 2 else data.shape[0]
    stack = data[np.newaxis] if data.ndim == 2 else data
    profile = {
        "driver": "GTiff",
        "dtype": "uint8",
        "count": count,
        "height": stack.shape[1],
        "width": stack.shape[2],
        "crs": "EPSG:26916",
        "transform": from_origin(0.0, 100.0, *cell),
        "nodata": nodata,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(stack)
    return path


class TestClassProportions:
    def test_ignores_invalid_cells(self) -> None:
        grid = np.array([[0, 0, 1], [2, INVALID_CELL, 7]], dtype=np.uint8)
        shares = class_proportions(grid)
        assert shares[LandCoverClass.CANOPY] == pytest.approx(0.5)
        assert shares[LandCoverClass.SHADOW] == pytest.approx(0.25)
        assert shares[LandCoverClass.OTHER] == pytest.approx(0.25)

    def test_all_invalid(self) -> None:
        grid = np.full((3, 3), INVALID_CELL, dtype=np.uint8)
        assert set(class_proportions(grid).values()) == {0.0}


class TestClassifiedRaster:
    def test_from_file_maps_nodata_and_unknown_codes(self, tmp_path: Path) -> None:
        data = np.array([[0, 1, 2], [9, 0, 200]], dtype=np.uint8)
        raster = ClassifiedRaster.from_file(_write(tmp_path / "c.tif", data, nodata=200))
        np.testing.assert_array_equal(raster.data, [[0, 1, 2], [INVALID_CELL, 0, INVALID_CELL]])
        assert raster.cell_size == pytest.approx(0.6)
        assert raster.crs.to_epsg() == 26916

    def test_multiband_rejected(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.tif", np.zeros((2, 4, 4), dtype=np.uint8))
        with pytest.raises(InputValidationError, match="single-band"):
            ClassifiedRaster.from_file(path)

    def test_non_square_cells_rejected(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "c.tif", np.zeros((4, 4), dtype=np.uint8), cell=(1.0, 2.0))
        with pytest.raises(InputValidationError, match="Non-square"):
            ClassifiedRaster.from_file(path)

    def test_unreadable_file(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.tif"
        path.write_text("not a raster")
        with pytest.raises(RasterError):
            ClassifiedRaster.from_file(path)

    def test_data_is_read_only(self) -> None:
        raster = ClassifiedRaster.from_array(np.zeros((4, 4)))
        with pytest.raises(ValueError):
            raster.data[0, 0] = 1

    def test_window_is_clipped_copy(self) -> None:
        raster = ClassifiedRaster.from_array(np.arange(16).reshape(4, 4) % 3)
        window = raster.window(-2, 2, 3, 8)
        assert window.shape == (2, 1)
        window[0, 0] = 2
        assert raster.data[0, 3] == 0

    def test_proportions(self) -> None:
        raster = ClassifiedRaster.from_array([[0, 0], [1, 2]])
        assert raster.proportions()[LandCoverClass.CANOPY] == pytest.approx(0.5)

    def test_rejects_1d(self) -> None:
        with pytest.raises(InputValidationError):
            ClassifiedRaster.from_array(np.zeros(5))
