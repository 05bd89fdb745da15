"""
Tests — Tile Aggregator / Mosaicker
====================================
Unit tests for :class:`~canopy_lsm.mosaic.MetricMosaic`.

Output rasters are written to ``tmp_path`` and read back with rasterio.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

from canopy_lsm.config import ScaleSpec
from canopy_lsm.metrics import (
    METRIC_NAMES,
    NODATA_VALUE,
    UNCALIBRATED_VALUE,
    UNDEFINED_VALUE,
    MetricVector,
)
from canopy_lsm.mosaic import MetricMosaic, boundary_name, output_name, read_lsm_raster
from canopy_lsm.partition import SublandscapePartitioner
from shared.python.exceptions import RasterError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _partitioner(shape: tuple[int, int] = (20, 20)) -> SublandscapePartitioner:
    return SublandscapePartitioner(
        shape,
        1.0,
        ScaleSpec(area_m2=100.0, label="100_m2"),
        transform=from_origin(500.0, 1000.0, 1.0, 1.0),
    )


def _mosaic(partitioner: SublandscapePartitioner, policy: str = "flag", status: str = "observed") -> MetricMosaic:
    return MetricMosaic(
        partitioner.output_shape,
        partitioner.output_transform,
        "EPSG:26916",
        scale_label=partitioner.scale.label,
        status=status,  # type: ignore[arg-type]
        boundary_policy=policy,  # type: ignore[arg-type]
    )


def _vector(value: float) -> MetricVector:
    return MetricVector(values={name: value for name in METRIC_NAMES})


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


class TestWrite:
    def test_values_land_in_window_cell(self) -> None:
        partitioner = _partitioner()
        mosaic = _mosaic(partitioner)
        window = partitioner.window_for(1, 0)
        assert mosaic.write(window, _vector(7.0))
        band = mosaic.band("AREA_MN")
        assert band[1, 0] == 7.0
        assert band[0, 0] == NODATA_VALUE

    def test_double_write_raises(self) -> None:
        partitioner = _partitioner()
        mosaic = _mosaic(partitioner)
        window = partitioner.window_for(0, 0)
        mosaic.write(window, _vector(1.0))
        with pytest.raises(RasterError, match="already written"):
            mosaic.write(window, _vector(2.0))
        assert mosaic.band("AI")[0, 0] == 1.0

    def test_undefined_and_uncalibrated_sentinels(self) -> None:
        partitioner = _partitioner()
        mosaic = _mosaic(partitioner, status="calibrated")
        values = {name: 1.0 for name in METRIC_NAMES}
        values["ENN_MN"] = None
        vector = MetricVector(values=values, status="calibrated", uncalibrated=frozenset({"AI"}))
        mosaic.write(partitioner.window_for(0, 0), vector)
        assert mosaic.band("ENN_MN")[0, 0] == UNDEFINED_VALUE
        assert mosaic.band("AI")[0, 0] == UNCALIBRATED_VALUE
        assert mosaic.band("LPI")[0, 0] == 1.0

    def test_concurrent_writes_cover_each_cell_once(self) -> None:
        partitioner = _partitioner((40, 40))
        mosaic = _mosaic(partitioner)
        windows = list(partitioner)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda w: mosaic.write(w, _vector(float(w.out_row))), windows))
        assert mosaic.is_complete
        assert mosaic.cells_written == len(windows)

    def test_concurrent_duplicate_rejected_once(self) -> None:
        partitioner = _partitioner()
        mosaic = _mosaic(partitioner)
        window = partitioner.window_for(0, 1)
        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(mosaic.write, window, _vector(float(i))) for i in range(4)]
        errors = [f.exception() for f in futures if f.exception() is not None]
        assert len(errors) == 3
        assert mosaic.cells_written == 1


# ---------------------------------------------------------------------------
# Boundary policy
# ---------------------------------------------------------------------------


class TestBoundaryPolicy:
    def test_exclude_drops_partial_windows(self) -> None:
        partitioner = _partitioner((25, 20))
        mosaic = _mosaic(partitioner, policy="exclude")
        partial = partitioner.window_for(2, 0)
        assert partial.is_partial
        assert mosaic.write(partial, _vector(1.0)) is False
        assert mosaic.band("AREA_MN")[2, 0] == NODATA_VALUE

    def test_flag_keeps_and_marks_partial_windows(self) -> None:
        partitioner = _partitioner((25, 20))
        mosaic = _mosaic(partitioner, policy="flag")
        assert mosaic.write(partitioner.window_for(2, 0), _vector(1.0))
        assert mosaic.write(partitioner.window_for(0, 0), _vector(1.0))
        assert mosaic.boundary_mask[2, 0]
        assert not mosaic.boundary_mask[0, 0]

    def test_unknown_policy(self) -> None:
        with pytest.raises(ValueError):
            _mosaic(_partitioner(), policy="clip")


# ---------------------------------------------------------------------------
# GeoTIFF output
# ---------------------------------------------------------------------------


class TestGeoTiffOutput:
    def test_output_name_encodes_scale_and_status(self) -> None:
        assert output_name("tile", "1_acre", "calibrated") == "tile_1_acre_calibrated.tif"
        assert boundary_name(Path("out/tile_1_acre_observed.tif")) == Path(
            "out/tile_1_acre_observed_boundary.tif"
        )

    def test_bands_in_fixed_order(self, tmp_path: Path) -> None:
        partitioner = _partitioner()
        mosaic = _mosaic(partitioner)
        for window in partitioner:
            mosaic.write(window, _vector(2.5))
        path = tmp_path / output_name("tile", "100_m2", "observed")
        written = mosaic.to_geotiff(path)

        assert written == [path]
        raster = read_lsm_raster(path)
        assert raster.metric_names == METRIC_NAMES
        assert raster.data.shape == (13, 2, 2)
        assert np.all(raster.band("SHAPE_AM") == 2.5)
        assert raster.tags["scale"] == "100_m2"
        assert raster.tags["status"] == "observed"
        assert raster.transform.a == pytest.approx(10.0)

    def test_extra_tags_written(self, tmp_path: Path) -> None:
        partitioner = SublandscapePartitioner(
            (20, 20),
            1.0,
            ScaleSpec(area_m2=100.0, label="100_m2"),
            mode="overlapping",
            step_fraction=0.5,
        )
        mosaic = MetricMosaic(
            partitioner.output_shape,
            partitioner.output_transform,
            scale_label="100_m2",
            tags=partitioner.geometry_tags(),
        )
        path = tmp_path / "tile_100_m2_observed.tif"
        mosaic.to_geotiff(path)
        tags = read_lsm_raster(path).tags
        assert tags["window_cells"] == "10"
        assert tags["step_cells"] == "5"
        assert tags["window_centre"] == "cell_upper_left"
        assert tags["scale"] == "100_m2"


    def test_nodata_and_crs(self, tmp_path: Path) -> None:
        partitioner = _partitioner()
        mosaic = _mosaic(partitioner)
        path = tmp_path / "empty.tif"
        mosaic.to_geotiff(path)
        with rasterio.open(path) as src:
            assert src.nodata == NODATA_VALUE
            assert src.crs.to_epsg() == 26916
            assert src.dtypes[0] == "float32"
            assert np.all(src.read(1) == NODATA_VALUE)

    def test_boundary_mask_written_when_flagged(self, tmp_path: Path) -> None:
        partitioner = _partitioner((25, 20))
        mosaic = _mosaic(partitioner, policy="flag")
        for window in partitioner:
            mosaic.write(window, _vector(1.0))
        path = tmp_path / "tile_100_m2_observed.tif"
        written = mosaic.to_geotiff(path)

        assert written == [path, boundary_name(path)]
        with rasterio.open(boundary_name(path)) as src:
            mask = src.read(1)
        assert mask[2].tolist() == [1, 1]
        assert mask[:2].sum() == 0
