"""
Tests — Inventory Fitting
==========================
Unit tests for :mod:`canopy_lsm.inventory`.

A small synthetic tree table is written to ``tmp_path`` as CSV.  After the
default plot filter it holds four plots with 2, 5, 0 and 10 qualifying
stems on 1/6-acre plots, i.e. 12, 30, 0 and 60 stems per acre, all
measured in 2020.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from canopy_lsm.config import ACRE_M2, PlotFilter
from canopy_lsm.inventory import (
    fit_stand_distributions,
    fit_stem_count,
    filter_trees,
    load_tree_table,
    plot_counts,
    stems_per_acre,
)
from canopy_lsm.simulation import sample_stem_count
from shared.python.exceptions import ColumnNotFoundError, InputValidationError, ModelFitError

PLOT_ACRES = 1.0 / 6.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tree(plot: str, diameter: float | None, *, year: int = 2020, visited: str = "Y",
          status: str = "live", species: str = "loblolly") -> dict:
    return {
        "plot_id": plot,
        "inventory_year": year,
        "visited": visited,
        "status": status,
        "diameter_cm": diameter,
        "species": species,
    }


def _trees() -> pd.DataFrame:
    rows = []
    rows += [_tree("P1", d) for d in (40.0, 44.0)]
    rows += [_tree("P1", 30.0, year=2015) for _ in range(20)]
    rows += [_tree("P2", d) for d in (30.0, 28.0, 33.0, 27.0, 31.0)]
    rows += [_tree("P2", 8.0)]
    rows += [_tree("P3", 35.0, status="dead")]
    rows += [_tree("P4", d) for d in (20.0, 18.0, 22.0, 19.0, 21.0, 17.0, 23.0, 20.0, 19.5, 16.0)]
    rows += [_tree("P4", 25.0, species="longleaf")]
    rows += [_tree("P5", 25.0, visited="N") for _ in range(3)]
    return pd.DataFrame(rows)


def _write_csv(tmp_path: Path, df: pd.DataFrame, name: str = "trees.csv") -> Path:
    path = tmp_path / name
    df.to_csv(path, index=False)
    return path


# ---------------------------------------------------------------------------
# Loading and filtering
# ---------------------------------------------------------------------------


class TestLoadAndFilter:
    def test_load_round_trip(self, tmp_path: Path) -> None:
        df = load_tree_table(_write_csv(tmp_path, _trees()))
        assert len(df) == len(_trees())

    def test_missing_column(self, tmp_path: Path) -> None:
        path = _write_csv(tmp_path, _trees().drop(columns=["status"]))
        with pytest.raises(ColumnNotFoundError):
            load_tree_table(path)

    def test_wrong_extension(self, tmp_path: Path) -> None:
        path = tmp_path / "trees.txt"
        path.write_text("plot_id\n")
        with pytest.raises(InputValidationError):
            load_tree_table(path)

    def test_default_filter(self) -> None:
        trees = filter_trees(_trees(), PlotFilter(species="loblolly"))
        assert sorted(trees["plot_id"].unique()) == ["P1", "P2", "P4"]
        assert len(trees) == 17
        assert trees["diameter_cm"].min() >= 12.7

    def test_dead_and_unvisited_kept_when_allowed(self) -> None:
        loose = PlotFilter(field_visited_only=False, live_only=False, most_recent_year_only=False)
        trees = filter_trees(_trees(), loose)
        assert {"P3", "P5"} <= set(trees["plot_id"])
        assert (trees["inventory_year"] == 2015).sum() == 20

    def test_stems_per_acre_includes_empty_plots(self) -> None:
        density = stems_per_acre(_trees(), PlotFilter(species="loblolly"), PLOT_ACRES)
        assert density.to_dict() == pytest.approx(
            {("P1", 2020): 12.0, ("P2", 2020): 30.0, ("P3", 2020): 0.0, ("P4", 2020): 60.0}
        )

    def test_plot_counts_are_raw_tallies(self) -> None:
        counts = plot_counts(_trees(), PlotFilter(species="loblolly"))
        assert counts.tolist() == pytest.approx([2.0, 5.0, 0.0, 10.0])

    def test_each_inventory_year_is_a_separate_visit(self) -> None:
        rows = [_tree("P1", 30.0, year=year) for year in (2010, 2015, 2020) for _ in range(5)]
        density = stems_per_acre(pd.DataFrame(rows), PlotFilter(most_recent_year_only=False), PLOT_ACRES)
        assert density.to_dict() == pytest.approx(
            {("P1", 2010): 30.0, ("P1", 2015): 30.0, ("P1", 2020): 30.0}
        )

    def test_repeat_visits_fit_as_separate_plots(self) -> None:
        rows = [_tree("P1", 30.0, year=2010) for _ in range(2)]
        rows += [_tree("P1", 20.0, year=2020) for _ in range(9)]
        rows += [_tree("P2", 25.0, year=2020) for _ in range(4)]
        fitted = fit_stand_distributions(pd.DataFrame(rows), PlotFilter(most_recent_year_only=False), PLOT_ACRES)
        assert fitted.n_plots == 3
        assert fitted.stem_count.mean_per_acre == pytest.approx(30.0)
        assert fitted.diameter.slope < 0


# ---------------------------------------------------------------------------
# Distribution fits
# ---------------------------------------------------------------------------


class TestFits:
    def test_negative_binomial_moments(self) -> None:
        counts = pd.Series([2.0, 5.0, 0.0, 10.0])
        dist = fit_stem_count(counts, PLOT_ACRES)
        assert dist.mean_per_acre == pytest.approx(25.5)
        # per-plot variance / mean = 1 / prob
        assert 1.0 / dist.prob == pytest.approx(56.75 / 12.75)

    def test_acre_draws_keep_plot_dispersion(self) -> None:
        # NB(2, 0.2) per 1/6-acre plot: 8 stems, variance 40.  Six such plots
        # make an acre with mean 48 and variance 240.
        rng = np.random.default_rng(7)
        counts = pd.Series(rng.negative_binomial(2, 0.2, size=20_000).astype(float))
        dist = fit_stem_count(counts, PLOT_ACRES)
        assert dist.mean_per_acre == pytest.approx(48.0, rel=0.05)
        acre = np.array([sample_stem_count(dist, ACRE_M2, rng) for _ in range(20_000)])
        assert acre.mean() == pytest.approx(48.0, rel=0.05)
        assert 210.0 < acre.var() < 275.0

    def test_under_dispersed_counts_fail(self) -> None:
        with pytest.raises(ModelFitError):
            fit_stem_count(pd.Series([10.0, 11.0, 10.0]), PLOT_ACRES)

    def test_single_plot_fails(self) -> None:
        with pytest.raises(ModelFitError):
            fit_stem_count(pd.Series([10.0]), PLOT_ACRES)

    def test_full_fit(self) -> None:
        fitted = fit_stand_distributions(_trees(), PlotFilter(species="loblolly"), PLOT_ACRES)
        assert fitted.n_plots == 4
        assert fitted.n_trees == 17
        # denser plots hold smaller trees
        assert fitted.diameter.slope < 0
        assert fitted.diameter.sigma > 0
        assert fitted.diameter.min_diameter_cm == 12.7
        assert np.isfinite(fitted.diameter.intercept)

    def test_no_density_spread_fails(self) -> None:
        rows = [_tree("A", d) for d in (20.0, 25.0)] + [_tree("B", d) for d in (30.0, 35.0)]
        rows += [_tree("C", 999.0, status="dead")]
        with pytest.raises(ModelFitError):
            fit_stand_distributions(pd.DataFrame(rows), PlotFilter(), PLOT_ACRES)
