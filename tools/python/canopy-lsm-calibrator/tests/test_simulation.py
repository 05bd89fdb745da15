"""
Tests — Shadow Simulator
=========================
Unit tests for :mod:`canopy_lsm.simulation`.

Stands are kept small (100 m² at 1 m cells) so every test runs quickly.
"""

from __future__ import annotations

import numpy as np
import pytest

from canopy_lsm.config import (
    ACRE_M2,
    AllometryConfig,
    DiameterDistribution,
    SimulationConfig,
    StemCountDistribution,
)
from canopy_lsm.metrics import MetricEngine
from canopy_lsm.raster import LandCoverClass
from canopy_lsm.simulation import (
    ShadowSimulator,
    Stem,
    place_stems,
    render_stand,
    sample_diameters,
    sample_stem_count,
    shadow_geometry,
)
from shared.python.exceptions import ConfigurationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stem(x: float = 5.0, y: float = 5.0, crown_width: float = 2.0, height: float = 10.0, base: float = 6.0) -> Stem:
    return Stem(x=x, y=y, diameter_cm=20.0, crown_width_m=crown_width, height_m=height, crown_base_m=base)


def _config(**kwargs) -> SimulationConfig:
    defaults = {"n_samples": 5, "seed": 1, "cell_size": 1.0}
    defaults.update(kwargs)
    return SimulationConfig(**defaults)


# ---------------------------------------------------------------------------
# Distributions and allometry
# ---------------------------------------------------------------------------


class TestDistributions:
    def test_stem_count_scales_with_area(self) -> None:
        per_acre = StemCountDistribution(size=3.0, prob=0.02)
        half = per_acre.for_area(ACRE_M2 / 2)
        assert half.size == pytest.approx(1.5)
        assert half.mean_per_acre == pytest.approx(per_acre.mean_per_acre / 2)

    def test_stem_count_mean(self) -> None:
        rng = np.random.default_rng(0)
        dist = StemCountDistribution(size=3.0, prob=0.02)
        draws = [sample_stem_count(dist, ACRE_M2, rng) for _ in range(3000)]
        assert np.mean(draws) == pytest.approx(dist.mean_per_acre, rel=0.1)

    def test_stem_count_reproducible(self) -> None:
        dist = StemCountDistribution()
        a = [sample_stem_count(dist, ACRE_M2, np.random.default_rng(5)) for _ in range(3)]
        b = [sample_stem_count(dist, ACRE_M2, np.random.default_rng(5)) for _ in range(3)]
        assert a == b

    def test_diameters_respect_minimum(self) -> None:
        dist = DiameterDistribution(intercept=2.0, slope=0.0, sigma=0.8, min_diameter_cm=12.7)
        diameters = sample_diameters(dist, 500, 150.0, np.random.default_rng(2))
        assert diameters.shape == (500,)
        assert diameters.min() >= 12.7

    def test_no_stems_no_diameters(self) -> None:
        assert sample_diameters(DiameterDistribution(), 0, 0.0, np.random.default_rng(0)).size == 0

    def test_allometry(self) -> None:
        allometry = AllometryConfig()
        assert allometry.crown_width(20.0) == pytest.approx(1.07 + 0.156 * 20.0)
        assert allometry.height(0.0) == pytest.approx(1.37)
        assert allometry.height(40.0) > allometry.height(20.0)
        assert allometry.crown_base_height(10.0) == pytest.approx(6.0)


# ---------------------------------------------------------------------------
# Stem placement
# ---------------------------------------------------------------------------


class TestPlacement:
    def test_uniform_positions_inside_plot(self) -> None:
        positions = place_stems(200, 10.0, np.random.default_rng(0))
        assert positions.shape == (200, 2)
        assert positions.min() >= 0.0
        assert positions.max() <= 10.0

    def test_minimum_separation(self) -> None:
        positions = place_stems(10, 20.0, np.random.default_rng(0), min_separation_m=3.0)
        dists = np.hypot(*(positions[:, None, :] - positions[None, :, :]).transpose(2, 0, 1))
        np.fill_diagonal(dists, np.inf)
        assert dists.min() >= 3.0

    def test_infeasible_separation(self) -> None:
        with pytest.raises(ConfigurationError, match="min_separation_m"):
            place_stems(50, 5.0, np.random.default_rng(0), min_separation_m=4.0, max_attempts=50)


# ---------------------------------------------------------------------------
# Geometry and rendering
# ---------------------------------------------------------------------------


class TestShadowGeometry:
    def test_shadow_points_away_from_sun(self) -> None:
        # sun due south at 45 degrees: the shadow runs north
        shadow = shadow_geometry(_stem(x=0.0, y=0.0), 45.0, 180.0)
        minx, miny, maxx, maxy = shadow.bounds
        assert miny == pytest.approx(5.0, abs=1e-6)
        assert maxy == pytest.approx(11.0, abs=1e-6)
        assert (minx, maxx) == pytest.approx((-1.0, 1.0), abs=1e-6)

    def test_low_sun_casts_longer_shadow(self) -> None:
        high = shadow_geometry(_stem(), 60.0, 90.0)
        low = shadow_geometry(_stem(), 30.0, 90.0)
        assert low.area > high.area

    def test_crowns_occlude_shadows(self) -> None:
        stems = (_stem(x=5.0, y=5.0),)
        true_raster, observed = render_stand(stems, 20, 1.0, 30.0, 180.0)
        crowns = true_raster == LandCoverClass.CANOPY
        assert crowns.any()
        assert np.all(observed[crowns] == LandCoverClass.CANOPY)
        assert np.any(observed == LandCoverClass.SHADOW)
        assert set(np.unique(true_raster)) <= {0, 2}

    def test_overhead_sun_casts_no_visible_shadow(self) -> None:
        stems = (_stem(x=3.0, y=4.0), _stem(x=7.0, y=6.0, crown_width=3.0))
        true_raster, observed = render_stand(stems, 10, 1.0, 90.0, 0.0)
        assert np.array_equal(true_raster, observed)


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------


class TestShadowSimulator:
    def test_stand_shape_matches_window(self) -> None:
        stand = next(ShadowSimulator(_config()).simulate(100.0, n=1))
        assert stand.true_raster.shape == (10, 10)
        assert stand.observed_raster.shape == (10, 10)
        assert stand.area_m2 == pytest.approx(100.0)

    def test_same_seed_same_stands(self) -> None:
        a = list(ShadowSimulator(_config(seed=9)).simulate(100.0))
        b = list(ShadowSimulator(_config(seed=9)).simulate(100.0))
        assert len(a) == 5
        for sa, sb in zip(a, b):
            assert sa.stems == sb.stems
            assert np.array_equal(sa.observed_raster, sb.observed_raster)

    def test_true_raster_is_observed_without_shadow(self) -> None:
        for stand in ShadowSimulator(_config(n_samples=10)).simulate(400.0):
            shadow = stand.observed_raster == LandCoverClass.SHADOW
            assert np.all(stand.true_raster[shadow] == LandCoverClass.OTHER)
            unshaded = ~shadow
            assert np.array_equal(stand.true_raster[unshaded], stand.observed_raster[unshaded])

    def test_sun_drawn_from_table(self) -> None:
        table = ((40.0, 120.0), (55.0, 200.0))
        stands = ShadowSimulator(_config(n_samples=20, sun_positions=table)).simulate(100.0)
        assert {(s.sun_altitude, s.sun_azimuth) for s in stands} <= set(table)

    def test_zero_shadow_gives_identical_metrics(self) -> None:
        engine = MetricEngine()
        simulator = ShadowSimulator(_config(n_samples=8, sun_positions=((90.0, 0.0),)))
        for stand in simulator.simulate(400.0):
            assert stand.shadow_proportion == 0.0
            observed = engine.compute(stand.observed_raster, stand.cell_size)
            true = engine.compute(stand.true_raster, stand.cell_size)
            assert observed.values == true.values

    def test_invalid_config_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ShadowSimulator(_config(sun_positions=((95.0, 0.0),)))
        with pytest.raises(ConfigurationError):
            ShadowSimulator(_config(n_samples=0))
