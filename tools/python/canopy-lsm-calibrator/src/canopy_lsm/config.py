"""
config.py
=========
Configuration bundles for metric computation and stand simulation.

Every option of the package is a field of one of the dataclasses below.
Each bundle has a ``validate()`` method raising
:class:`~shared.python.exceptions.ConfigurationError`, and can be loaded
from a plain dict or a JSON file so runs are reproducible from a config
file::

    config = AnalysisConfig.from_json(Path("analysis.json"))
    config.validate()
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping

from shared.python.exceptions import ConfigurationError, InputValidationError
from shared.python.validators import Validators

from .metrics import DEFAULT_CONNECTIVITY, ContrastWeights, MetricEngine

# Square metres per acre.
ACRE_M2 = 4046.8564224

# Fraction of the plane covered when random sequential placement of equal
# discs can place no more.
JAMMING_COVERAGE = 0.547


def _load_json(path: Path) -> dict[str, Any]:
    Validators.assert_file_exists(path)
    try:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as exc:
        raise InputValidationError(f"Config file '{path}' is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise InputValidationError(f"Config file '{path}' must contain a JSON object.")
    return raw


# ---------------------------------------------------------------------------
# Analysis scale
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScaleSpec:
    """Area of one analysis window and the token naming its outputs.

    Attributes:
        area_m2: Target window area in square metres.
        label: File-name token, e.g. ``"1_acre"``.
    """

    area_m2: float
    label: str

    @classmethod
    def from_acres(cls, acres: float) -> ScaleSpec:
        """``ScaleSpec.from_acres(1)`` → area 4046.86 m², label ``"1_acre"``."""
        token = f"{acres:g}".replace(".", "p")
        return cls(area_m2=float(acres) * ACRE_M2, label=f"{token}_acre")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ScaleSpec:
        if "acres" in raw:
            return cls.from_acres(float(raw["acres"]))
        return cls(area_m2=float(raw["area_m2"]), label=str(raw["label"]))

    def validate(self) -> None:
        Validators.assert_positive(f"scale '{self.label}' area_m2", self.area_m2)
        if not self.label or any(ch in self.label for ch in "/\\ "):
            raise ConfigurationError("scale label", f"{self.label!r} is not a valid file-name token")


# ---------------------------------------------------------------------------
# Metric computation
# ---------------------------------------------------------------------------


@dataclass
class AnalysisConfig:
    """Configuration of the production metric run.

    Attributes:
        scales: Window areas to process; one output raster pair per scale.
        sampling_mode: ``"disjoint"`` windows or ``"overlapping"`` block
                       subsampling.
        step_fraction: Window step as a fraction of the window side for
                       overlapping mode (``0.5`` doubles the output
                       resolution).  Ignored in disjoint mode.
        edge_depth: Core-area edge depth in cells.  Defaults to one cell.
        connectivity: Patch neighbourhood rule (4 or 8) per metric family
                      (``area``, ``shape``, ``core``, ``isolation``).
        focal_class: Class the metrics describe (0 = Canopy); ``None``
                     computes landscape-level metrics over all classes.
        boundary_policy: ``"exclude"`` drops windows that extend past the
                         raster edge, ``"flag"`` keeps them and records
                         them in a boundary mask.
        boundary_is_edge: Whether the window boundary counts as patch edge
                          when measuring core area.
        workers: Size of the window worker pool.
        contrast_weights: ``{"a,b": weight}`` class contrast weights.  Only
                          needed for edge contrast metrics.
        extra_metrics: Optional metrics beyond the 13 output bands.
    """

    scales: list[ScaleSpec] = field(default_factory=lambda: [ScaleSpec.from_acres(1.0)])
    sampling_mode: Literal["disjoint", "overlapping"] = "disjoint"
    step_fraction: float = 0.5
    edge_depth: int = 1
    connectivity: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CONNECTIVITY))
    focal_class: int | None = 0
    boundary_policy: Literal["exclude", "flag"] = "flag"
    boundary_is_edge: bool = True
    workers: int = 4
    contrast_weights: dict[str, float] | None = None
    extra_metrics: list[str] = field(default_factory=list)

    @property
    def effective_step_fraction(self) -> float:
        return 1.0 if self.sampling_mode == "disjoint" else self.step_fraction

    def validate(self) -> None:
        """Check options that do not depend on the input raster.

        Raises:
            ConfigurationError: On the first invalid option.
        """
        if not self.scales:
            raise ConfigurationError("scales", "at least one scale is required")
        labels = [s.label for s in self.scales]
        if len(set(labels)) != len(labels):
            raise ConfigurationError("scales", f"duplicate scale labels in {labels}")
        for scale in self.scales:
            scale.validate()
        Validators.assert_choice("sampling_mode", self.sampling_mode, ["disjoint", "overlapping"])
        Validators.assert_choice("boundary_policy", self.boundary_policy, ["exclude", "flag"])
        if not (isinstance(self.step_fraction, (int, float)) and 0.0 < self.step_fraction <= 1.0):
            raise ConfigurationError("step_fraction", f"must be in (0, 1] (got {self.step_fraction!r})")
        Validators.assert_positive_int("workers", self.workers)
        # The engine validates edge depth, connectivity, focal class and contrast.
        self.metric_engine()

    def validate_for_raster(self, cell_size: float, shape: tuple[int, int]) -> None:
        """Check the scale / step / edge-depth combination against a raster.

        Raises:
            ConfigurationError: If a window cannot be formed or has no room
                for core area.
        """
        from .partition import SublandscapePartitioner  # noqa: PLC0415

        for scale in self.scales:
            partitioner = SublandscapePartitioner(
                shape,
                cell_size,
                scale,
                mode=self.sampling_mode,
                step_fraction=self.effective_step_fraction,
            )
            if 2 * self.edge_depth >= partitioner.window_cells:
                raise ConfigurationError(
                    "edge_depth",
                    f"{self.edge_depth} cell(s) leaves no core in a "
                    f"{partitioner.window_cells}-cell window at scale '{scale.label}'",
                )

    def metric_engine(self) -> MetricEngine:
        """Build the metric engine these options describe."""
        weights = ContrastWeights.from_dict(self.contrast_weights) if self.contrast_weights else None
        return MetricEngine(
            focal_class=self.focal_class,
            edge_depth=self.edge_depth,
            connectivity=self.connectivity,
            boundary_is_edge=self.boundary_is_edge,
            contrast_weights=weights,
            extra_metrics=self.extra_metrics,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> AnalysisConfig:
        known = set(cls.__dataclass_fields__)
        unknown = set(raw) - known
        if unknown:
            raise ConfigurationError("analysis", f"unknown option(s): {sorted(unknown)}")
        values = dict(raw)
        if "scales" in values:
            values["scales"] = [ScaleSpec.from_dict(s) for s in values["scales"]]
        if "connectivity" in values:
            values["connectivity"] = {**DEFAULT_CONNECTIVITY, **values["connectivity"]}
        return cls(**values)

    @classmethod
    def from_json(cls, path: Path) -> AnalysisConfig:
        return cls.from_dict(_load_json(path))


# ---------------------------------------------------------------------------
# Inventory plot filtering
# ---------------------------------------------------------------------------


@dataclass
class PlotFilter:
    """Criteria selecting the inventory trees used to fit stand distributions.

    Attributes:
        field_visited_only: Keep only plots visited on the ground.
        live_only: Keep only live trees.
        min_diameter_cm: Minimum stem diameter at breast height.
        most_recent_year_only: Keep only each plot's latest inventory.
        species: Keep a single species (``None`` keeps all).
    """

    field_visited_only: bool = True
    live_only: bool = True
    min_diameter_cm: float = 12.7
    most_recent_year_only: bool = True
    species: str | None = None

    def validate(self) -> None:
        if self.min_diameter_cm < 0 or not math.isfinite(self.min_diameter_cm):
            raise ConfigurationError("min_diameter_cm", "must be a non-negative number")


# ---------------------------------------------------------------------------
# Stand simulation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StemCountDistribution:
    """Negative binomial stem count per acre, ``scipy.stats.nbinom(size, prob)``.

    Mean stems per acre is ``size * (1 - prob) / prob``.
    """

    size: float = 3.0
    prob: float = 0.0196

    @property
    def mean_per_acre(self) -> float:
        return self.size * (1.0 - self.prob) / self.prob

    def for_area(self, area_m2: float) -> StemCountDistribution:
        """Distribution of stem counts for a stand of *area_m2*.

        A sum of independent negative binomials with a shared ``prob`` is
        negative binomial with the summed ``size``.
        """
        return StemCountDistribution(size=self.size * area_m2 / ACRE_M2, prob=self.prob)

    def validate(self) -> None:
        Validators.assert_positive("stem_count.size", self.size)
        if not 0.0 < self.prob < 1.0:
            raise ConfigurationError("stem_count.prob", f"must be in (0, 1) (got {self.prob!r})")


@dataclass(frozen=True)
class DiameterDistribution:
    """Lognormal stem diameter conditioned on stand density.

    ``ln(D) ~ Normal(intercept + slope * ln(stems per acre), sigma)``, with
    draws below ``min_diameter_cm`` redrawn.
    """

    intercept: float = 4.72
    slope: float = -0.3
    sigma: float = 0.4
    min_diameter_cm: float = 12.7

    def log_mean(self, stems_per_acre: float) -> float:
        return self.intercept + self.slope * math.log(max(stems_per_acre, 1.0))

    def validate(self) -> None:
        Validators.assert_positive("diameter.sigma", self.sigma)
        if self.min_diameter_cm < 0:
            raise ConfigurationError("diameter.min_diameter_cm", "must be non-negative")


@dataclass(frozen=True)
class AllometryConfig:
    """Deterministic crown width and height from stem diameter.

    Crown width is linear in diameter (m per cm); height follows a
    Chapman–Richards curve above breast height (1.37 m).  The crown is a
    vertical cylinder whose base sits at ``height * (1 - crown_ratio)``.
    """

    crown_width_intercept: float = 1.07
    crown_width_slope: float = 0.156
    height_asymptote: float = 30.0
    height_rate: float = 0.04
    height_shape: float = 1.2
    crown_ratio: float = 0.4

    def crown_width(self, diameter_cm: float) -> float:
        return self.crown_width_intercept + self.crown_width_slope * diameter_cm

    def height(self, diameter_cm: float) -> float:
        return 1.37 + self.height_asymptote * (
            1.0 - math.exp(-self.height_rate * diameter_cm)
        ) ** self.height_shape

    def crown_base_height(self, height_m: float) -> float:
        return height_m * (1.0 - self.crown_ratio)

    def validate(self) -> None:
        Validators.assert_positive("allometry.height_asymptote", self.height_asymptote)
        Validators.assert_positive("allometry.height_rate", self.height_rate)
        Validators.assert_positive("allometry.height_shape", self.height_shape)
        if not 0.0 < self.crown_ratio <= 1.0:
            raise ConfigurationError("allometry.crown_ratio", "must be in (0, 1]")
        if self.crown_width_intercept <= 0 or self.crown_width_slope < 0:
            raise ConfigurationError(
                "allometry.crown_width", "intercept must be positive and slope non-negative"
            )


# (altitude, azimuth) in degrees at typical summer aerial acquisition times.
DEFAULT_SUN_POSITIONS: tuple[tuple[float, float], ...] = (
    (40.0, 130.0),
    (45.0, 135.0),
    (48.0, 225.0),
    (50.0, 190.0),
    (52.0, 145.0),
    (55.0, 215.0),
    (58.0, 160.0),
    (60.0, 200.0),
    (62.0, 180.0),
    (66.0, 170.0),
)


@dataclass
class SimulationConfig:
    """Configuration of the shadow simulator and calibration fit.

    Attributes:
        n_samples: Number of simulated stands per scale.
        seed: Random seed; ``None`` draws fresh entropy.
        cell_size: Cell size of the simulated rasters in metres.  Should
                   match the production imagery.
        min_separation_m: Minimum stem spacing; ``None`` allows overlap.
        max_placement_attempts: Rejection-sampling budget per stem when a
                                minimum separation is set.
        sun_positions: Empirical (altitude, azimuth) table in degrees.
        stem_count: Stem count distribution per acre.
        diameter: Diameter distribution.
        allometry: Crown width and height equations.
        plot_filter: Inventory filter used when the distributions are
                     fitted from plot data.
        plot_area_acres: Area of one inventory plot.
    """

    n_samples: int = 500
    seed: int | None = 0
    cell_size: float = 1.0
    min_separation_m: float | None = None
    max_placement_attempts: int = 1000
    sun_positions: tuple[tuple[float, float], ...] = DEFAULT_SUN_POSITIONS
    stem_count: StemCountDistribution = field(default_factory=StemCountDistribution)
    diameter: DiameterDistribution = field(default_factory=DiameterDistribution)
    allometry: AllometryConfig = field(default_factory=AllometryConfig)
    plot_filter: PlotFilter = field(default_factory=PlotFilter)
    plot_area_acres: float = 1.0 / 6.0

    def validate(self) -> None:
        Validators.assert_positive_int("n_samples", self.n_samples)
        Validators.assert_positive("cell_size", self.cell_size)
        Validators.assert_positive_int("max_placement_attempts", self.max_placement_attempts)
        Validators.assert_positive("plot_area_acres", self.plot_area_acres)
        if self.min_separation_m is not None:
            Validators.assert_positive("min_separation_m", self.min_separation_m)
        if not self.sun_positions:
            raise ConfigurationError("sun_positions", "at least one sun position is required")
        for altitude, azimuth in self.sun_positions:
            if not 0.0 < altitude <= 90.0:
                raise ConfigurationError("sun_positions", f"altitude {altitude} not in (0, 90]")
            if not 0.0 <= azimuth < 360.0:
                raise ConfigurationError("sun_positions", f"azimuth {azimuth} not in [0, 360)")
        self.stem_count.validate()
        self.diameter.validate()
        self.allometry.validate()
        self.plot_filter.validate()
        if self.min_separation_m is not None:
            self._check_separation_feasible()

    def _check_separation_feasible(self) -> None:
        """Reject spacings that cannot fit the expected stand density.

        Each stem reserves a disc of diameter ``min_separation_m``.  Random
        sequential placement jams once discs cover about
        :data:`JAMMING_COVERAGE` of the plane; an average stand needing more
        cannot be placed.
        """
        assert self.min_separation_m is not None
        disc = math.pi * (self.min_separation_m / 2.0) ** 2
        coverage = self.stem_count.mean_per_acre * disc / ACRE_M2
        if coverage > JAMMING_COVERAGE:
            raise ConfigurationError(
                "min_separation_m",
                f"{self.min_separation_m:g} m spacing at {self.stem_count.mean_per_acre:.0f} "
                f"stems/acre needs {coverage:.0%} of the plot, more than random placement "
                f"can fill ({JAMMING_COVERAGE:.0%})",
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SimulationConfig:
        known = set(cls.__dataclass_fields__)
        unknown = set(raw) - known
        if unknown:
            raise ConfigurationError("simulation", f"unknown option(s): {sorted(unknown)}")
        values = dict(raw)
        nested = {
            "stem_count": StemCountDistribution,
            "diameter": DiameterDistribution,
            "allometry": AllometryConfig,
            "plot_filter": PlotFilter,
        }
        for key, klass in nested.items():
            if key in values and isinstance(values[key], Mapping):
                try:
                    values[key] = klass(**values[key])
                except TypeError as exc:
                    raise ConfigurationError(key, f"unknown or missing option(s): {exc}") from exc
        if "sun_positions" in values:
            values["sun_positions"] = tuple(
                (float(alt), float(az)) for alt, az in values["sun_positions"]
            )
        return cls(**values)

    @classmethod
    def from_json(cls, path: Path) -> SimulationConfig:
        return cls.from_dict(_load_json(path))


__all__ = [
    "ACRE_M2",
    "AllometryConfig",
    "AnalysisConfig",
    "DEFAULT_SUN_POSITIONS",
    "DiameterDistribution",
    "PlotFilter",
    "ScaleSpec",
    "SimulationConfig",
    "StemCountDistribution",
]
