"""
Tests — Sublandscape Partitioner
=================================
Unit tests for :class:`~canopy_lsm.partition.SublandscapePartitioner`.

A 100 m² scale at 1 m cells gives 10-cell windows, which keeps the grids
small enough to reason about by hand.
"""

from __future__ import annotations

import numpy as np
import pytest
from rasterio.transform import from_origin

from canopy_lsm.config import ScaleSpec
from canopy_lsm.metrics import MetricEngine
from canopy_lsm.partition import SublandscapePartitioner
from canopy_lsm.raster import ClassifiedRaster
from shared.python.exceptions import ConfigurationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SCALE = ScaleSpec(area_m2=100.0, label="100_m2")


def _partitioner(shape=(25, 30), **kwargs) -> SublandscapePartitioner:
    return SublandscapePartitioner(shape, 1.0, _SCALE, **kwargs)


# ---------------------------------------------------------------------------
# Window geometry
# ---------------------------------------------------------------------------


class TestDisjoint:
    def test_window_side_from_area(self) -> None:
        assert _partitioner().window_cells == 10

    def test_one_acre_at_one_metre(self) -> None:
        partitioner = SublandscapePartitioner((200, 200), 1.0, ScaleSpec.from_acres(1))
        assert partitioner.window_cells == 64

    def test_output_grid(self) -> None:
        partitioner = _partitioner()
        assert partitioner.output_shape == (3, 3)
        assert partitioner.output_cell_size == 10.0
        assert len(list(partitioner)) == 9

    def test_partial_windows_at_edge(self) -> None:
        windows = {w.output_cell: w for w in _partitioner()}
        assert not windows[(0, 0)].is_partial
        assert not windows[(1, 2)].is_partial
        assert windows[(2, 0)].is_partial
        assert windows[(2, 0)].bounds == (20, 25, 0, 10)

    def test_window_centroid_in_map_units(self) -> None:
        partitioner = _partitioner(transform=from_origin(0.0, 25.0, 1.0, 1.0))
        window = partitioner.window_for(0, 0)
        assert window.centroid == pytest.approx((5.0, 20.0))

    def test_output_transform_scaled_by_step(self) -> None:
        partitioner = _partitioner(transform=from_origin(100.0, 200.0, 1.0, 1.0))
        out = partitioner.output_transform
        assert (out.a, out.e, out.c, out.f) == pytest.approx((10.0, -10.0, 100.0, 200.0))


class TestOverlapping:
    def test_half_step_doubles_resolution(self) -> None:
        disjoint = _partitioner()
        overlapping = _partitioner(mode="overlapping", step_fraction=0.5)
        assert overlapping.output_cell_size * 2 == disjoint.output_cell_size
        assert overlapping.output_shape == (5, 6)

    def test_every_output_cell_has_exactly_one_window(self) -> None:
        partitioner = _partitioner(mode="overlapping", step_fraction=0.5)
        cells = [w.output_cell for w in partitioner]
        rows, cols = partitioner.output_shape
        assert len(cells) == len(set(cells)) == rows * cols

    def test_windows_share_cells(self) -> None:
        partitioner = _partitioner(mode="overlapping", step_fraction=0.5)
        a = partitioner.window_for(1, 1)
        b = partitioner.window_for(1, 2)
        assert a.size == b.size == 10
        assert b.col_start - a.col_start == 5

    def test_window_centred_on_output_cell(self) -> None:
        partitioner = _partitioner(mode="overlapping", step_fraction=0.5)
        window = partitioner.window_for(0, 0)
        assert (window.row_start, window.col_start) == (-5, -5)
        assert window.step_offset == (-5, -5)
        assert window.is_partial

    def test_step_one_matches_disjoint_windows(self) -> None:
        disjoint = [w.bounds for w in _partitioner()]
        overlapping = [w.bounds for w in _partitioner(mode="overlapping", step_fraction=1.0)]
        assert disjoint == overlapping

    def test_step_one_matches_disjoint_metrics(self) -> None:
        rng = np.random.default_rng(11)
        raster = ClassifiedRaster.from_array(rng.integers(0, 3, size=(30, 30)))
        engine = MetricEngine()
        for a, b in zip(
            _partitioner(raster.shape),
            _partitioner(raster.shape, mode="overlapping", step_fraction=1.0),
        ):
            va = engine.compute(raster.window(*a.bounds), raster.cell_size)
            vb = engine.compute(raster.window(*b.bounds), raster.cell_size)
            assert va.values == vb.values

    @pytest.mark.parametrize(
        ("mode", "step_fraction", "offset", "centre"),
        [
            ("disjoint", 1.0, 0.5, "cell_centre"),
            ("overlapping", 0.5, 0.0, "cell_upper_left"),
            ("overlapping", 0.2, 0.5, "cell_centre"),
        ],
    )
    def test_geometry_tags_locate_window_centre(self, mode, step_fraction, offset, centre) -> None:
        partitioner = _partitioner(mode=mode, step_fraction=step_fraction)
        assert partitioner.window_centre_offset == offset
        tags = partitioner.geometry_tags()
        assert tags["window_centre"] == centre
        assert tags["window_cells"] == "10"
        assert tags["step_cells"] == str(partitioner.step)

    def test_centre_offset_matches_window_centroid(self) -> None:
        partitioner = _partitioner(mode="overlapping", step_fraction=0.5)
        window = partitioner.window_for(2, 3)
        # identity-like transform: x = col, y = -row
        corner_x, corner_y = 3 * partitioner.step, -2 * partitioner.step
        assert window.centroid == pytest.approx((corner_x, corner_y))



# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_step_not_whole_cells(self) -> None:
        with pytest.raises(ConfigurationError, match="step_fraction"):
            _partitioner(mode="overlapping", step_fraction=0.3)

    def test_step_not_dividing_window(self) -> None:
        with pytest.raises(ConfigurationError, match="step_fraction"):
            _partitioner(mode="overlapping", step_fraction=0.4)

    def test_step_fraction_out_of_range(self) -> None:
        with pytest.raises(ConfigurationError):
            _partitioner(mode="overlapping", step_fraction=1.5)

    def test_scale_smaller_than_a_cell(self) -> None:
        with pytest.raises(ConfigurationError, match="scale"):
            SublandscapePartitioner((10, 10), 1.0, ScaleSpec(area_m2=0.1, label="tiny"))

    def test_unknown_mode(self) -> None:
        with pytest.raises(ConfigurationError):
            _partitioner(mode="random")  # type: ignore[arg-type]

    def test_disjoint_ignores_step_fraction(self) -> None:
        partitioner = _partitioner(step_fraction=0.3)
        assert partitioner.step == 10
