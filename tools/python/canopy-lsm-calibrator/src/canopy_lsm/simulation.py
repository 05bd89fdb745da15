"""
simulation.py
=============
Stochastic forest stands and their cast shadows.

Each simulated stand is a square plot of the analysis-window size:

1. Stem count ~ negative binomial, per-acre parameters scaled to the plot.
2. Stem diameters ~ lognormal whose log-mean depends on stem density.
3. Crown width, height and crown base follow deterministic allometry.
4. Stems are placed uniformly at random, optionally with a minimum spacing.
5. A sun position is drawn from an empirical (altitude, azimuth) table.

Crowns are vertical cylinders.  The shadow of a crown is its disc swept
along the anti-sun direction from the projection of the crown base to the
projection of the tree top.  The stand is then rendered twice: the *true*
raster holds crowns only, the *observed* raster adds the shadows that crowns
do not cover.  Rendering uses :mod:`shapely` geometry burned with
:func:`rasterio.features.rasterize` (cell-centre rule).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np
import numpy.typing as npt
from rasterio.features import rasterize
from rasterio.transform import Affine, from_origin
from scipy import stats
from shapely.geometry import LineString, Point
from shapely.geometry.base import BaseGeometry

from shared.python.exceptions import ConfigurationError

from .config import (
    ACRE_M2,
    AllometryConfig,
    DiameterDistribution,
    SimulationConfig,
    StemCountDistribution,
)
from .raster import LandCoverClass, class_proportions

logger = logging.getLogger("canopylsm.simulation")

# Redraw rounds for diameters below the inventory minimum.
_MAX_REDRAWS = 100


@dataclass(frozen=True)
class Stem:
    """One simulated tree. Positions in metres from the plot's lower-left corner."""

    x: float
    y: float
    diameter_cm: float
    crown_width_m: float
    height_m: float
    crown_base_m: float

    @property
    def crown_radius_m(self) -> float:
        return self.crown_width_m / 2.0


@dataclass(frozen=True)
class SimulatedStand:
    """A simulated plot with its true and observed class rasters.

    Attributes:
        stems: The trees of the stand.
        sun_altitude: Sun altitude in degrees above the horizon.
        sun_azimuth: Sun azimuth in degrees clockwise from north.
        true_raster: Crowns only (Canopy / Other).
        observed_raster: Crowns plus uncovered shadow (Canopy / Shadow / Other).
        cell_size: Cell size in metres.
        area_m2: Plot area in square metres.
    """

    stems: tuple[Stem, ...]
    sun_altitude: float
    sun_azimuth: float
    true_raster: npt.NDArray[np.uint8]
    observed_raster: npt.NDArray[np.uint8]
    cell_size: float
    area_m2: float

    @property
    def stem_count(self) -> int:
        return len(self.stems)

    @property
    def stems_per_acre(self) -> float:
        return self.stem_count / (self.area_m2 / ACRE_M2)

    @property
    def canopy_proportion(self) -> float:
        """Canopy share of the observed raster."""
        return class_proportions(self.observed_raster)[LandCoverClass.CANOPY]

    @property
    def shadow_proportion(self) -> float:
        """Shadow share of the observed raster."""
        return class_proportions(self.observed_raster)[LandCoverClass.SHADOW]


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def sample_stem_count(
    distribution: StemCountDistribution, area_m2: float, rng: np.random.Generator
) -> int:
    """Draw the number of stems in a plot of *area_m2*."""
    scaled = distribution.for_area(area_m2)
    return int(stats.nbinom.rvs(scaled.size, scaled.prob, random_state=rng))


def sample_diameters(
    distribution: DiameterDistribution,
    n_stems: int,
    stems_per_acre: float,
    rng: np.random.Generator,
) -> npt.NDArray[np.float64]:
    """Draw *n_stems* diameters (cm) conditioned on stand density.

    Draws below the inventory minimum are redrawn; any still below it after
    the redraw budget are clamped to the minimum.
    """
    if n_stems == 0:
        return np.empty(0, dtype=np.float64)
    mu = distribution.log_mean(stems_per_acre)
    diameters = rng.lognormal(mu, distribution.sigma, size=n_stems)
    for _ in range(_MAX_REDRAWS):
        low = diameters < distribution.min_diameter_cm
        if not low.any():
            break
        diameters[low] = rng.lognormal(mu, distribution.sigma, size=int(low.sum()))
    return np.maximum(diameters, distribution.min_diameter_cm)


def place_stems(
    n_stems: int,
    side_m: float,
    rng: np.random.Generator,
    *,
    min_separation_m: float | None = None,
    max_attempts: int = 1000,
) -> npt.NDArray[np.float64]:
    """Uniform random ``(x, y)`` stem positions in a ``side_m`` square.

    Without a minimum separation stems may overlap completely.  With one,
    each candidate closer than ``min_separation_m`` to a placed stem is
    rejected and redrawn.

    Raises:
        ConfigurationError: If a stem cannot be placed within
            ``max_attempts`` draws.
    """
    if min_separation_m is None:
        return rng.uniform(0.0, side_m, size=(n_stems, 2))

    placed = np.empty((n_stems, 2), dtype=np.float64)
    for i in range(n_stems):
        for _ in range(max_attempts):
            candidate = rng.uniform(0.0, side_m, size=2)
            if i == 0 or np.hypot(*(placed[:i] - candidate).T).min() >= min_separation_m:
                placed[i] = candidate
                break
        else:
            raise ConfigurationError(
                "min_separation_m",
                f"could not place stem {i + 1} of {n_stems} {min_separation_m:g} m apart "
                f"in a {side_m:g} m plot after {max_attempts} attempts",
            )
    return placed


def grow_stems(
    positions: npt.NDArray[np.float64],
    diameters: npt.NDArray[np.float64],
    allometry: AllometryConfig,
) -> tuple[Stem, ...]:
    """Attach allometric crown and height dimensions to each stem."""
    stems = []
    for (x, y), diameter in zip(positions, diameters):
        height = allometry.height(float(diameter))
        stems.append(
            Stem(
                x=float(x),
                y=float(y),
                diameter_cm=float(diameter),
                crown_width_m=allometry.crown_width(float(diameter)),
                height_m=height,
                crown_base_m=allometry.crown_base_height(height),
            )
        )
    return tuple(stems)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


def crown_geometry(stem: Stem) -> BaseGeometry:
    return Point(stem.x, stem.y).buffer(stem.crown_radius_m)


def shadow_geometry(stem: Stem, sun_altitude: float, sun_azimuth: float) -> BaseGeometry:
    """Ground shadow of a cylindrical crown.

    A disc at height ``z`` casts a disc displaced ``z / tan(altitude)`` away
    from the sun, so the whole cylinder casts the crown disc swept between
    the crown-base and tree-top displacements.
    """
    tan_alt = math.tan(math.radians(sun_altitude))
    az = math.radians(sun_azimuth)
    dx, dy = -math.sin(az), -math.cos(az)
    near = stem.crown_base_m / tan_alt
    far = stem.height_m / tan_alt
    if far < 1e-9:
        # sun overhead: the shadow lies under the crown
        return crown_geometry(stem)
    start = (stem.x + dx * near, stem.y + dy * near)
    end = (stem.x + dx * far, stem.y + dy * far)
    if math.isclose(near, far, abs_tol=1e-9):
        return Point(start).buffer(stem.crown_radius_m)
    return LineString([start, end]).buffer(stem.crown_radius_m)


def _burn(geoms: list[BaseGeometry], side_cells: int, transform: Affine) -> npt.NDArray[np.bool_]:
    if not geoms:
        return np.zeros((side_cells, side_cells), dtype=bool)
    burned = rasterize(
        [(g, 1) for g in geoms],
        out_shape=(side_cells, side_cells),
        transform=transform,
        fill=0,
        dtype=np.uint8,
    )
    return burned.astype(bool)


def render_stand(
    stems: tuple[Stem, ...],
    side_cells: int,
    cell_size: float,
    sun_altitude: float,
    sun_azimuth: float,
) -> tuple[npt.NDArray[np.uint8], npt.NDArray[np.uint8]]:
    """Rasterise a stand.

    Returns:
        ``(true_raster, observed_raster)``.  Crowns occlude shadows in the
        observed raster.
    """
    transform = from_origin(0.0, side_cells * cell_size, cell_size, cell_size)
    crowns = _burn([crown_geometry(s) for s in stems], side_cells, transform)
    shadows = _burn([shadow_geometry(s, sun_altitude, sun_azimuth) for s in stems], side_cells, transform)

    true_raster = np.full((side_cells, side_cells), LandCoverClass.OTHER, dtype=np.uint8)
    true_raster[crowns] = LandCoverClass.CANOPY

    observed = np.full((side_cells, side_cells), LandCoverClass.OTHER, dtype=np.uint8)
    observed[shadows] = LandCoverClass.SHADOW
    observed[crowns] = LandCoverClass.CANOPY
    return true_raster, observed


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------


class ShadowSimulator:
    """Generate simulated stands for calibration.

    Args:
        config: Distribution, allometry and sun-position settings.

    Example::

        simulator = ShadowSimulator(SimulationConfig(n_samples=200, seed=42))
        for stand in simulator.simulate(area_m2=ACRE_M2):
            ...
    """

    def __init__(self, config: SimulationConfig | None = None) -> None:
        self.config = config or SimulationConfig()
        self.config.validate()

    def side_cells(self, area_m2: float) -> int:
        """Plot side in cells, rounded the same way as analysis windows."""
        side = int(round(math.sqrt(area_m2) / self.config.cell_size))
        if side < 1:
            raise ConfigurationError("area_m2", f"{area_m2:g} m² is smaller than one cell")
        return side

    def sample_sun(self, rng: np.random.Generator) -> tuple[float, float]:
        """Draw an (altitude, azimuth) pair from the empirical table."""
        positions = self.config.sun_positions
        return positions[int(rng.integers(len(positions)))]

    def simulate_stand(self, area_m2: float, rng: np.random.Generator) -> SimulatedStand:
        """Simulate one stand of *area_m2*."""
        cfg = self.config
        side_cells = self.side_cells(area_m2)
        side_m = side_cells * cfg.cell_size
        plot_area = side_m * side_m

        n_stems = sample_stem_count(cfg.stem_count, plot_area, rng)
        stems_per_acre = n_stems / (plot_area / ACRE_M2)
        diameters = sample_diameters(cfg.diameter, n_stems, stems_per_acre, rng)
        positions = place_stems(
            n_stems,
            side_m,
            rng,
            min_separation_m=cfg.min_separation_m,
            max_attempts=cfg.max_placement_attempts,
        )
        stems = grow_stems(positions, diameters, cfg.allometry)
        altitude, azimuth = self.sample_sun(rng)
        true_raster, observed = render_stand(stems, side_cells, cfg.cell_size, altitude, azimuth)

        return SimulatedStand(
            stems=stems,
            sun_altitude=altitude,
            sun_azimuth=azimuth,
            true_raster=true_raster,
            observed_raster=observed,
            cell_size=cfg.cell_size,
            area_m2=plot_area,
        )

    def simulate(self, area_m2: float, n: int | None = None) -> Iterator[SimulatedStand]:
        """Yield *n* stands (default ``config.n_samples``).

        The sequence is reproducible for a fixed ``config.seed``.
        """
        n = self.config.n_samples if n is None else n
        rng = np.random.default_rng(self.config.seed)
        logger.info("Simulating %d stand(s) of %.0f m² ...", n, area_m2)
        for i in range(n):
            stand = self.simulate_stand(area_m2, rng)
            logger.debug(
                "Stand %d: %d stems, sun %.0f/%.0f, canopy %.3f, shadow %.3f",
                i,
                stand.stem_count,
                stand.sun_altitude,
                stand.sun_azimuth,
                stand.canopy_proportion,
                stand.shadow_proportion,
            )
            yield stand
