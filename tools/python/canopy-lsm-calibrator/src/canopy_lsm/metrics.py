"""
metrics.py
==========
Landscape structure metric (LSM) engine.

Each metric is implemented as a :class:`LandscapeMetric` strategy following
the FRAGSTATS formulas.  The :class:`MetricEngine` orchestrator delineates
the patches of a window once per connectivity rule, runs every strategy and
collects the results into a :class:`MetricVector`.

Metrics are computed at class level for the focal class (Canopy by default)
or at landscape level over every valid class when ``focal_class=None``.
Proportions (LPI, AI) are reported as fractions in [0, 1] and coefficients
of variation as ``sd / mean``, not percentages.

Supported metrics (in output band order):

    AREA_MN    mean patch area (m²)
    AI         aggregation index
    ENN_MN     mean Euclidean nearest-neighbour distance (m)
    SHAPE_MN   mean shape index
    FRAC_MN    mean fractal dimension index
    FRAC_AM    area-weighted mean fractal dimension index
    FRAC_CV    coefficient of variation of the fractal dimension index
    ENN_CV     coefficient of variation of the nearest-neighbour distance
    LPI        largest patch index
    AREA_AM    area-weighted mean patch area (m²)
    CORE_AM    area-weighted mean core area (m²)
    GYRATE_AM  area-weighted mean radius of gyration (m)
    SHAPE_AM   area-weighted mean shape index

Optional:

    TECI       total edge contrast index (needs a contrast weight matrix)
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from itertools import combinations
from typing import Iterable, Literal, Mapping

import numpy as np
import numpy.typing as npt
from scipy import ndimage, spatial

from shared.python.exceptions import ConfigurationError, InputDataError, UndefinedMetricError

from .patches import NEIGHBOURHOOD, Patch, PatchSet, delineate_patches
from .raster import VALID_CLASSES, LandCoverClass, valid_mask

logger = logging.getLogger("canopylsm.metrics")

METRIC_NAMES: tuple[str, ...] = (
    "AREA_MN",
    "AI",
    "ENN_MN",
    "SHAPE_MN",
    "FRAC_MN",
    "FRAC_AM",
    "FRAC_CV",
    "ENN_CV",
    "LPI",
    "AREA_AM",
    "CORE_AM",
    "GYRATE_AM",
    "SHAPE_AM",
)

# Output raster sentinels.  All are negative and far outside the range of
# every metric, so none can be mistaken for a valid zero.
NODATA_VALUE = -9999.0
UNDEFINED_VALUE = -9998.0
UNCALIBRATED_VALUE = -9997.0

MetricFamily = Literal["area", "shape", "core", "isolation"]

DEFAULT_CONNECTIVITY: dict[str, int] = {
    "area": 4,
    "shape": 4,
    "core": 4,
    "isolation": 8,
}


# ---------------------------------------------------------------------------
# Metric vector
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricVector:
    """Metric values for one analysis window.

    Attributes:
        values: Ordered mapping of metric name → value, ``None`` when the
                metric is undefined for the window.
        status: ``"observed"`` for raw values, ``"calibrated"`` after the
                calibration model has been applied.
        uncalibrated: Metrics of a calibrated vector for which no fitted
                      regression was available.
        input_error: ``True`` when the window itself was unusable.
    """

    values: Mapping[str, float | None]
    status: Literal["observed", "calibrated"] = "observed"
    uncalibrated: frozenset[str] = field(default_factory=frozenset)
    input_error: bool = False

    @classmethod
    def undefined(cls, names: Iterable[str], *, input_error: bool = False) -> MetricVector:
        """A vector with every metric undefined."""
        return cls(values={name: None for name in names}, input_error=input_error)

    def __getitem__(self, name: str) -> float | None:
        return self.values[name]

    def __iter__(self):
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self.values)

    def is_defined(self, name: str) -> bool:
        return self.values[name] is not None

    def as_array(self, names: Iterable[str] = METRIC_NAMES) -> npt.NDArray[np.float64]:
        """Values in *names* order with undefined / uncalibrated sentinels."""
        out = []
        for name in names:
            value = self.values.get(name)
            if name in self.uncalibrated:
                out.append(UNCALIBRATED_VALUE)
            elif value is None:
                out.append(UNDEFINED_VALUE)
            else:
                out.append(value)
        return np.asarray(out, dtype=np.float64)


# ---------------------------------------------------------------------------
# Edge contrast weights
# ---------------------------------------------------------------------------


class ContrastWeights:
    """Symmetric class-contrast weight matrix for edge contrast metrics.

    Pairings without a weight are *undefined*: the contrast between them
    has no meaning (e.g. Canopy vs. the heterogeneous Other class) and any
    contrast metric depending on them is refused at configuration time.

    Example::

        weights = ContrastWeights({(0, 1): 0.2})
        weights.get(1, 0)  # 0.2
        weights.get(0, 2)  # None
    """

    def __init__(self, weights: Mapping[tuple[int, int], float] | None = None) -> None:
        self._weights: dict[frozenset[int], float] = {}
        for (a, b), w in (weights or {}).items():
            if a == b:
                raise ConfigurationError("contrast_weights", f"self-contrast for class {a} is not allowed")
            if not 0.0 <= float(w) <= 1.0:
                raise ConfigurationError("contrast_weights", f"weight for ({a}, {b}) must be in [0, 1]")
            key = frozenset((int(a), int(b)))
            if key in self._weights and self._weights[key] != float(w):
                raise ConfigurationError("contrast_weights", f"conflicting weights for ({a}, {b})")
            self._weights[key] = float(w)

    @classmethod
    def from_dict(cls, raw: Mapping[str, float]) -> ContrastWeights:
        """Parse ``{"0,1": 0.2}`` style keys (as found in JSON configs)."""
        parsed = {}
        for key, value in raw.items():
            try:
                a, b = (int(part) for part in str(key).split(","))
                parsed[(a, b)] = float(value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    "contrast_weights", f"bad pairing {key!r}: {value!r} (expected \"a,b\": weight)"
                ) from exc
        return cls(parsed)

    def get(self, a: int, b: int) -> float | None:
        return self._weights.get(frozenset((int(a), int(b))))

    def undefined_pairs(self, pairs: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
        return [(a, b) for a, b in pairs if self.get(a, b) is None]

    def to_dict(self) -> dict[str, float]:
        return {",".join(str(c) for c in sorted(k)): w for k, w in self._weights.items()}


# ---------------------------------------------------------------------------
# Per-window context
# ---------------------------------------------------------------------------


class WindowContext:
    """Lazily delineated patch sets for one window.

    Patch delineation is the expensive step, so it runs at most once per
    connectivity rule no matter how many metrics need it.
    """

    def __init__(
        self,
        grid: npt.NDArray,
        cell_size: float,
        *,
        focal_class: int | None,
        connectivity: Mapping[str, int],
        edge_depth: int,
        boundary_is_edge: bool,
    ) -> None:
        self.grid = grid
        self.cell_size = cell_size
        self.focal_class = focal_class
        self.connectivity = connectivity
        self.edge_depth = edge_depth
        self.boundary_is_edge = boundary_is_edge
        self.valid_cells = int(valid_mask(grid).sum())
        self._patch_sets: dict[int, PatchSet] = {}

    @property
    def window_area(self) -> float:
        return self.valid_cells * self.cell_size * self.cell_size

    def patch_set(self, family: str) -> PatchSet:
        rule = self.connectivity[family]
        if rule not in self._patch_sets:
            classes = None if self.focal_class is None else (self.focal_class,)
            self._patch_sets[rule] = delineate_patches(
                self.grid,
                self.cell_size,
                rule,  # type: ignore[arg-type]
                classes=classes,
                edge_depth=self.edge_depth,
                boundary_is_edge=self.boundary_is_edge,
            )
        return self._patch_sets[rule]

    def patches(self, family: str) -> list[Patch]:
        return self.patch_set(family).of_class(self.focal_class)

    def classes(self) -> tuple[int, ...]:
        if self.focal_class is not None:
            return (self.focal_class,)
        return tuple(c for c in VALID_CLASSES if np.any(self.grid == c))


# ---------------------------------------------------------------------------
# Formula helpers
# ---------------------------------------------------------------------------


def shape_index(cell_count: int, perimeter_cells: float) -> float:
    """Perimeter divided by the minimum perimeter for the same cell count."""
    n = math.floor(math.sqrt(cell_count))
    m = cell_count - n * n
    if m == 0:
        min_p = 4 * n
    elif m <= n:
        min_p = 4 * n + 2
    else:
        min_p = 4 * n + 4
    return perimeter_cells / min_p


def fractal_dimension(cell_count: int, perimeter_cells: float) -> float:
    """``2 ln(0.25 p) / ln(a)`` in cell units; 1.0 for single-cell patches."""
    if cell_count <= 1:
        return 1.0
    return 2.0 * math.log(0.25 * perimeter_cells) / math.log(cell_count)


def max_like_adjacencies(cell_count: int) -> int:
    """Maximum number of like adjacencies for *cell_count* cells (single count)."""
    n = math.floor(math.sqrt(cell_count))
    m = cell_count - n * n
    if m == 0:
        return 2 * n * (n - 1)
    if m <= n:
        return 2 * n * (n - 1) + 2 * m - 1
    return 2 * n * (n - 1) + 2 * m - 2


def like_adjacencies(grid: npt.NDArray, class_value: int) -> int:
    """Single-count rook adjacencies between cells of *class_value*."""
    mask = grid == class_value
    return int(
        np.count_nonzero(mask[1:, :] & mask[:-1, :])
        + np.count_nonzero(mask[:, 1:] & mask[:, :-1])
    )


def nearest_neighbour_distances(label_arr: npt.NDArray, connectivity: int) -> npt.NDArray[np.float64]:
    """Edge-to-edge distance (in cells) from each patch to its nearest same-class patch.

    Distances are measured between cell centres of patch edge cells, as in
    FRAGSTATS.  Returns an empty array when fewer than two patches exist.
    """
    n_patches = int(label_arr.max()) if label_arr.size else 0
    if n_patches < 2:
        return np.empty(0, dtype=np.float64)

    # The nearest pair of cells between two patches always lies on their edges.
    label_mask = label_arr != 0
    edges = label_mask & ~ndimage.binary_erosion(label_mask, NEIGHBOURHOOD[connectivity])
    rows, cols = np.nonzero(edges)
    labels = label_arr[rows, cols]
    coords = np.column_stack((rows, cols)).astype(np.float64)

    enn = np.empty(n_patches, dtype=np.float64)
    for label in range(1, n_patches + 1):
        own = labels == label
        tree = spatial.cKDTree(coords[~own])
        dist, _ = tree.query(coords[own])
        enn[label - 1] = float(np.min(dist))
    return enn


_STATISTICS = ("MN", "AM", "CV")


# ---------------------------------------------------------------------------
# Metric strategy ABC + concrete implementations
# ---------------------------------------------------------------------------


class LandscapeMetric(ABC):
    """Abstract base for a single landscape structure metric.

    Subclasses declare the :attr:`family` whose connectivity rule their
    patches use and implement :meth:`compute`.  ``compute`` raises
    :class:`UndefinedMetricError` when the value does not exist for the
    window; it never returns NaN.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """FRAGSTATS acronym (e.g. ``"AREA_MN"``)."""

    @property
    def family(self) -> str | None:
        """Connectivity family, or ``None`` when the metric does not use patches."""
        return None

    @abstractmethod
    def compute(self, ctx: WindowContext) -> float:
        """Compute the metric for one window."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name})"


class PatchDistributionMetric(LandscapeMetric):
    """Summary statistic (``MN``, ``AM`` or ``CV``) of a per-patch measurement.

    Args:
        statistic: ``"MN"`` mean, ``"AM"`` area-weighted mean, ``"CV"``
                   coefficient of variation.
    """

    prefix: str = ""
    patch_family: str = "area"

    def __init__(self, statistic: Literal["MN", "AM", "CV"]) -> None:
        if statistic not in _STATISTICS:
            raise ValueError(f"Unknown statistic {statistic!r}")
        self.statistic = statistic

    @property
    def name(self) -> str:
        return f"{self.prefix}_{self.statistic}"

    @property
    def family(self) -> str:
        return self.patch_family

    @abstractmethod
    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        """Per-patch values and the matching patch areas."""

    def compute(self, ctx: WindowContext) -> float:
        values, areas = self.patch_values(ctx)
        if values.size == 0:
            raise UndefinedMetricError(self.name, "no patch has a value")
        if self.statistic == "MN":
            return float(np.mean(values))
        if self.statistic == "AM":
            return float(np.sum(values * areas) / np.sum(areas))
        mean = float(np.mean(values))
        if mean == 0.0:
            raise UndefinedMetricError(self.name, "mean is zero")
        # population standard deviation, as FRAGSTATS
        return float(np.std(values)) / mean


class PatchAreaMetric(PatchDistributionMetric):
    """AREA: patch area in square metres."""

    prefix = "AREA"
    patch_family = "area"

    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        areas = np.array([p.area for p in ctx.patches(self.family)], dtype=np.float64)
        return areas, areas


class ShapeIndexMetric(PatchDistributionMetric):
    """SHAPE: perimeter relative to the most compact raster shape of equal area."""

    prefix = "SHAPE"
    patch_family = "shape"

    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        patches = ctx.patches(self.family)
        values = np.array(
            [shape_index(p.cell_count, p.perimeter_cells(ctx.cell_size)) for p in patches],
            dtype=np.float64,
        )
        return values, np.array([p.area for p in patches], dtype=np.float64)


class FractalDimensionMetric(PatchDistributionMetric):
    """FRAC: perimeter-area fractal dimension, between 1 and 2."""

    prefix = "FRAC"
    patch_family = "shape"

    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        patches = ctx.patches(self.family)
        values = np.array(
            [fractal_dimension(p.cell_count, p.perimeter_cells(ctx.cell_size)) for p in patches],
            dtype=np.float64,
        )
        return values, np.array([p.area for p in patches], dtype=np.float64)


class CoreAreaMetric(PatchDistributionMetric):
    """CORE: area farther than the edge depth from the patch edge (m²)."""

    prefix = "CORE"
    patch_family = "core"

    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        patches = ctx.patches(self.family)
        return (
            np.array([p.core_area for p in patches], dtype=np.float64),
            np.array([p.area for p in patches], dtype=np.float64),
        )


class GyrationMetric(PatchDistributionMetric):
    """GYRATE: mean distance of patch cells from the patch centroid (m)."""

    prefix = "GYRATE"
    patch_family = "area"

    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        patches = ctx.patches(self.family)
        return (
            np.array([p.gyration for p in patches], dtype=np.float64),
            np.array([p.area for p in patches], dtype=np.float64),
        )


class NearestNeighbourMetric(PatchDistributionMetric):
    """ENN: edge-to-edge distance to the nearest patch of the same class (m).

    Patches without a same-class neighbour in the window contribute no value.
    """

    prefix = "ENN"
    patch_family = "isolation"

    def patch_values(self, ctx: WindowContext) -> tuple[npt.NDArray, npt.NDArray]:
        patch_set = ctx.patch_set(self.family)
        values: list[npt.NDArray] = []
        areas: list[npt.NDArray] = []
        for class_value in ctx.classes():
            label_arr = patch_set.labels.get(class_value)
            if label_arr is None:
                continue
            enn = nearest_neighbour_distances(label_arr, patch_set.connectivity)
            if enn.size:
                values.append(enn * ctx.cell_size)
                areas.append(np.array(
                    [p.area for p in patch_set.of_class(class_value)], dtype=np.float64
                ))
        if not values:
            return np.empty(0), np.empty(0)
        return np.concatenate(values), np.concatenate(areas)


class LargestPatchIndex(LandscapeMetric):
    """LPI: largest patch area as a fraction of the window area."""

    @property
    def name(self) -> str:
        return "LPI"

    @property
    def family(self) -> str:
        return "area"

    def compute(self, ctx: WindowContext) -> float:
        patches = ctx.patches(self.family)
        if not patches:
            raise UndefinedMetricError(self.name, "no patches of the focal class")
        return max(p.area for p in patches) / ctx.window_area


class AggregationIndex(LandscapeMetric):
    """AI: like adjacencies relative to their maximum for the class area.

    At landscape level the class values are weighted by class proportion.
    """

    @property
    def name(self) -> str:
        return "AI"

    def compute(self, ctx: WindowContext) -> float:
        weighted, total = 0.0, 0
        for class_value in ctx.classes():
            cell_count = int(np.count_nonzero(ctx.grid == class_value))
            max_g = max_like_adjacencies(cell_count)
            if max_g == 0:
                continue
            weighted += cell_count * like_adjacencies(ctx.grid, class_value) / max_g
            total += cell_count
        if total == 0:
            raise UndefinedMetricError(self.name, "no class with more than one cell")
        return weighted / total


class EdgeContrastIndex(LandscapeMetric):
    """TECI: contrast-weighted share of edge between the focal class and others.

    Args:
        weights: The contrast weight matrix.  Every pairing that can occur
                 must be defined; see :meth:`MetricEngine.validate`.
    """

    def __init__(self, weights: ContrastWeights) -> None:
        self.weights = weights

    @property
    def name(self) -> str:
        return "TECI"

    def compute(self, ctx: WindowContext) -> float:
        grid = ctx.grid
        weighted, total = 0.0, 0
        for a, b in combinations(VALID_CLASSES, 2):
            if ctx.focal_class is not None and ctx.focal_class not in (a, b):
                continue
            ma, mb = grid == a, grid == b
            n_edges = int(
                np.count_nonzero(ma[1:, :] & mb[:-1, :]) + np.count_nonzero(mb[1:, :] & ma[:-1, :])
                + np.count_nonzero(ma[:, 1:] & mb[:, :-1]) + np.count_nonzero(mb[:, 1:] & ma[:, :-1])
            )
            if n_edges == 0:
                continue
            weight = self.weights.get(a, b)
            if weight is None:
                raise UndefinedMetricError(self.name, f"no contrast weight for classes {a} and {b}")
            weighted += weight * n_edges
            total += n_edges
        if total == 0:
            raise UndefinedMetricError(self.name, "window has no class edges")
        return weighted / total


def default_metrics() -> list[LandscapeMetric]:
    """The 13 output metrics, in band order."""
    return [
        PatchAreaMetric("MN"),
        AggregationIndex(),
        NearestNeighbourMetric("MN"),
        ShapeIndexMetric("MN"),
        FractalDimensionMetric("MN"),
        FractalDimensionMetric("AM"),
        FractalDimensionMetric("CV"),
        NearestNeighbourMetric("CV"),
        LargestPatchIndex(),
        PatchAreaMetric("AM"),
        CoreAreaMetric("AM"),
        GyrationMetric("AM"),
        ShapeIndexMetric("AM"),
    ]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MetricEngine:
    """Compute a :class:`MetricVector` for class grids.

    The engine is stateless between calls and safe to share between worker
    threads.

    Args:
        focal_class: Class the metrics describe; ``None`` for landscape level.
        edge_depth: Edge depth in cells for core area (default 1 cell).
        connectivity: Connectivity rule per metric family; missing families
                      use :data:`DEFAULT_CONNECTIVITY`.
        boundary_is_edge: Whether the window boundary counts as patch edge
                          for core area.
        contrast_weights: Weight matrix for edge contrast metrics.
        extra_metrics: Names of optional metrics to compute in addition to
                       the 13 output metrics (currently ``"TECI"``).

    Raises:
        ConfigurationError: On an invalid option or a contrast metric
            requested for an undefined class pairing.

    Example::

        engine = MetricEngine(edge_depth=2)
        vector = engine.compute(window_grid, cell_size=1.0)
        vector["AREA_MN"]
    """

    def __init__(
        self,
        *,
        focal_class: int | None = int(LandCoverClass.CANOPY),
        edge_depth: int = 1,
        connectivity: Mapping[str, int] | None = None,
        boundary_is_edge: bool = True,
        contrast_weights: ContrastWeights | None = None,
        extra_metrics: Iterable[str] = (),
    ) -> None:
        self.focal_class = focal_class
        self.edge_depth = edge_depth
        self.connectivity = {**DEFAULT_CONNECTIVITY, **(connectivity or {})}
        self.boundary_is_edge = boundary_is_edge
        self.contrast_weights = contrast_weights
        self.metrics: list[LandscapeMetric] = default_metrics()

        for name in extra_metrics:
            if name != "TECI":
                raise ConfigurationError("extra_metrics", f"unknown metric {name!r}")
            if contrast_weights is None:
                raise ConfigurationError("contrast_weights", "TECI requires a contrast weight matrix")
            self.metrics.append(EdgeContrastIndex(contrast_weights))

        self.validate()

    def validate(self) -> None:
        """Check the engine options.

        Raises:
            ConfigurationError: On an invalid option combination.
        """
        if self.focal_class is not None and self.focal_class not in VALID_CLASSES:
            raise ConfigurationError("focal_class", f"must be one of {VALID_CLASSES} or None")
        if isinstance(self.edge_depth, bool) or not isinstance(self.edge_depth, int) or self.edge_depth < 1:
            raise ConfigurationError("edge_depth", f"must be a positive integer (got {self.edge_depth!r})")
        for family, rule in self.connectivity.items():
            if family not in DEFAULT_CONNECTIVITY:
                raise ConfigurationError("connectivity", f"unknown metric family {family!r}")
            if rule not in (4, 8):
                raise ConfigurationError("connectivity", f"{family} rule must be 4 or 8 (got {rule!r})")

        if any(m.name == "TECI" for m in self.metrics):
            assert self.contrast_weights is not None
            pairs = [
                (a, b) for a, b in combinations(VALID_CLASSES, 2)
                if self.focal_class is None or self.focal_class in (a, b)
            ]
            missing = self.contrast_weights.undefined_pairs(pairs)
            if missing:
                pretty = ", ".join(
                    f"{LandCoverClass(a).name}/{LandCoverClass(b).name}" for a, b in missing
                )
                raise ConfigurationError(
                    "contrast_weights",
                    f"TECI requested but contrast is undefined for {pretty}",
                )

    @property
    def metric_names(self) -> tuple[str, ...]:
        return tuple(m.name for m in self.metrics)

    def compute(self, grid: npt.ArrayLike, cell_size: float, *, window_id: str | None = None) -> MetricVector:
        """Compute every metric for one window.

        A window without valid class cells is recovered as an all-undefined
        vector flagged with ``input_error``.
        """
        grid = np.asarray(grid)
        try:
            if grid.ndim != 2 or grid.size == 0:
                raise InputDataError(f"expected a non-empty 2-D grid, got shape {grid.shape}", window_id)
            if not valid_mask(grid).any():
                raise InputDataError("no valid class cells", window_id)
        except InputDataError as exc:
            logger.warning("%s; metrics marked undefined", exc.message)
            return MetricVector.undefined(self.metric_names, input_error=True)

        ctx = WindowContext(
            grid,
            cell_size,
            focal_class=self.focal_class,
            connectivity=self.connectivity,
            edge_depth=self.edge_depth,
            boundary_is_edge=self.boundary_is_edge,
        )
        values: dict[str, float | None] = {}
        for metric in self.metrics:
            try:
                value = float(metric.compute(ctx))
                if not math.isfinite(value):
                    raise UndefinedMetricError(metric.name, "non-finite result")
            except UndefinedMetricError as exc:
                logger.debug("%s%s", exc.message, f" ({window_id})" if window_id else "")
                value = None
            values[metric.name] = value
        return MetricVector(values=values)
