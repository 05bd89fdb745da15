"""
inventory.py
============
Fit the simulator's stem-count and diameter distributions from field
inventory plot data.

The tree table is a CSV with one row per tallied tree:

    plot_id, inventory_year, visited, status, diameter_cm, species

Plots with no qualifying trees must still appear (with empty tree fields)
so that zero-stem plots count towards the stem distribution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from shared.python.exceptions import InputValidationError, ModelFitError
from shared.python.validators import Validators

from .config import DiameterDistribution, PlotFilter, StemCountDistribution

logger = logging.getLogger("canopylsm.inventory")

REQUIRED_COLUMNS = ("plot_id", "inventory_year", "visited", "status", "diameter_cm", "species")

_TRUE_TOKENS = {"true", "1", "y", "yes", "t"}


@dataclass(frozen=True)
class StandDistributions:
    """Distributions fitted from inventory plots."""

    stem_count: StemCountDistribution
    diameter: DiameterDistribution
    n_plots: int
    n_trees: int


def load_tree_table(path: Path) -> pd.DataFrame:
    """Read and check an inventory tree table.

    Raises:
        InputValidationError: If the file is missing or not a CSV.
        ColumnNotFoundError: If a required column is absent.
    """
    path = Path(path)
    Validators.assert_file_exists(path)
    Validators.assert_supported_extension(path, [".csv"])
    try:
        df = pd.read_csv(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise InputValidationError(f"Could not parse tree table '{path}': {exc}") from exc
    Validators.assert_columns_exist(df, REQUIRED_COLUMNS)
    df["diameter_cm"] = pd.to_numeric(df["diameter_cm"], errors="coerce")
    logger.debug("Loaded %d tree record(s) from %s", len(df), path.name)
    return df


def _truthy(series: pd.Series) -> pd.Series:
    return series.astype(str).str.strip().str.lower().isin(_TRUE_TOKENS)


def select_plots(df: pd.DataFrame, plot_filter: PlotFilter) -> pd.DataFrame:
    """Apply the plot-level criteria (field visit, inventory year)."""
    plots = df
    if plot_filter.field_visited_only:
        plots = plots[_truthy(plots["visited"])]
    if plot_filter.most_recent_year_only and not plots.empty:
        latest = plots.groupby("plot_id")["inventory_year"].transform("max")
        plots = plots[plots["inventory_year"] == latest]
    return plots


def filter_trees(df: pd.DataFrame, plot_filter: PlotFilter) -> pd.DataFrame:
    """Rows of *df* passing every plot- and tree-level criterion."""
    trees = select_plots(df, plot_filter)
    trees = trees[trees["diameter_cm"].notna()]
    if plot_filter.live_only:
        trees = trees[trees["status"].astype(str).str.strip().str.lower() == "live"]
    trees = trees[trees["diameter_cm"] >= plot_filter.min_diameter_cm]
    if plot_filter.species is not None:
        trees = trees[trees["species"].astype(str).str.strip() == plot_filter.species]
    return trees


PLOT_KEY = ["plot_id", "inventory_year"]


def plot_counts(df: pd.DataFrame, plot_filter: PlotFilter) -> pd.Series:
    """Qualifying stems on every selected plot visit, zeros included.

    Each ``(plot_id, inventory_year)`` pair is one plot observation, so a
    plot re-measured in several years contributes one count per visit.
    """
    visits = pd.MultiIndex.from_frame(select_plots(df, plot_filter)[PLOT_KEY].drop_duplicates())
    counts = filter_trees(df, plot_filter).groupby(PLOT_KEY).size()
    return counts.reindex(visits, fill_value=0).astype(float)


def stems_per_acre(df: pd.DataFrame, plot_filter: PlotFilter, plot_area_acres: float) -> pd.Series:
    """Qualifying stems per acre for every selected plot visit, zeros included."""
    return plot_counts(df, plot_filter) / plot_area_acres


def fit_stem_count(counts: pd.Series, plot_area_acres: float) -> StemCountDistribution:
    """Negative binomial stems-per-acre model by the method of moments.

    The moments are taken on raw per-plot counts.  A plot of ``a`` acres is
    NB(size, prob); an acre is then NB(size / a, prob), the inverse of
    :meth:`StemCountDistribution.for_area`.

    Raises:
        ModelFitError: With fewer than two plots or no over-dispersion.
    """
    if len(counts) < 2:
        raise ModelFitError("stem count distribution", f"need at least 2 plots, got {len(counts)}")
    mean = float(counts.mean())
    var = float(counts.var(ddof=1))
    if mean <= 0 or var <= mean:
        raise ModelFitError(
            "stem count distribution",
            f"stems per plot are not over-dispersed (mean {mean:.2f}, variance {var:.2f})",
        )
    size_per_plot = mean * mean / (var - mean)
    return StemCountDistribution(size=size_per_plot / plot_area_acres, prob=mean / var)


def fit_diameter(trees: pd.DataFrame, density: pd.Series, min_diameter_cm: float) -> DiameterDistribution:
    """OLS of ln(diameter) on ln(stems per acre of the tree's plot visit).

    Raises:
        ModelFitError: With too few trees or no spread in plot density.
    """
    visit = pd.MultiIndex.from_frame(trees[PLOT_KEY])
    plot_density = density.reindex(visit).to_numpy(dtype=float)

    log_d = np.log(trees["diameter_cm"].to_numpy(dtype=float))
    if len(log_d) < 3:
        raise ModelFitError("diameter distribution", f"need at least 3 trees, got {len(log_d)}")
    log_spa = np.log(plot_density)
    design = np.column_stack([np.ones_like(log_spa), log_spa])
    coef, _, rank, _ = np.linalg.lstsq(design, log_d, rcond=None)
    if rank < 2:
        raise ModelFitError("diameter distribution", "all trees come from plots of equal density")
    residuals = log_d - design @ coef
    sigma = float(np.sqrt(residuals @ residuals / (len(log_d) - 2)))
    if sigma <= 0:
        raise ModelFitError("diameter distribution", "zero residual variance")
    return DiameterDistribution(
        intercept=float(coef[0]),
        slope=float(coef[1]),
        sigma=sigma,
        min_diameter_cm=min_diameter_cm,
    )


def fit_stand_distributions(
    df: pd.DataFrame,
    plot_filter: PlotFilter,
    plot_area_acres: float,
) -> StandDistributions:
    """Fit both simulator distributions from an inventory tree table.

    Raises:
        ModelFitError: If either distribution cannot be fitted.
    """
    plot_filter.validate()
    counts = plot_counts(df, plot_filter)
    density = counts / plot_area_acres
    trees = filter_trees(df, plot_filter)
    stem_count = fit_stem_count(counts, plot_area_acres)
    diameter = fit_diameter(trees, density, plot_filter.min_diameter_cm)
    logger.info(
        "Fitted stand distributions from %d plot visit(s), %d tree(s): "
        "mean %.1f stems/acre, ln D = %.3f %+.3f ln(spa), sigma %.3f",
        len(density),
        len(trees),
        stem_count.mean_per_acre,
        diameter.intercept,
        diameter.slope,
        diameter.sigma,
    )
    return StandDistributions(stem_count, diameter, n_plots=len(density), n_trees=len(trees))
