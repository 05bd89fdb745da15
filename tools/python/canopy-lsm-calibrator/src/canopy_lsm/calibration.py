"""
calibration.py
==============
Per-metric, per-scale shadow-bias regression.

For every scale and every metric an ordinary least squares model predicts
the true (shadow-free) metric value from

    x   the observed metric value
    c   the canopy proportion of the window
    r   the shadow : canopy ratio of the window

and their pairwise interactions::

    y = b0 + b1·x + b2·c + b3·r + b4·x·c + b5·x·r + b6·c·r

Models are fitted once on simulated stands and saved as JSON.  A metric that
cannot be fitted at a scale is recorded as a failure; applying the model
then flags that metric as uncalibrated instead of passing the observed
value off as corrected.
"""

from __future__ import annotations

import json
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np
import numpy.typing as npt

from shared.python.exceptions import InputValidationError, ModelFitError, OutputWriteError
from shared.python.validators import Validators

from .metrics import METRIC_NAMES, MetricEngine, MetricVector
from .simulation import SimulatedStand

logger = logging.getLogger("canopylsm.calibration")

TERM_NAMES: tuple[str, ...] = ("intercept", "x", "c", "r", "x:c", "x:r", "c:r")
# One more sample than parameters leaves a residual degree of freedom.
MIN_SAMPLES = len(TERM_NAMES) + 1
MODEL_FORMAT_VERSION = 1


def shadow_ratio(canopy_proportion: float, shadow_proportion: float) -> float:
    """Shadow-to-canopy ratio; 0 when the window has no canopy."""
    if canopy_proportion <= 0:
        return 0.0
    return shadow_proportion / canopy_proportion


def design_matrix(
    x: npt.ArrayLike, c: npt.ArrayLike, r: npt.ArrayLike
) -> npt.NDArray[np.float64]:
    x, c, r = (np.atleast_1d(np.asarray(v, dtype=np.float64)) for v in (x, c, r))
    return np.column_stack([np.ones_like(x), x, c, r, x * c, x * r, c * r])


@dataclass(frozen=True)
class CalibrationSample:
    """One training row: the same stand measured with and without shadow."""

    observed: MetricVector
    true: MetricVector
    canopy_proportion: float
    shadow_proportion: float
    scale_label: str

    @property
    def shadow_ratio(self) -> float:
        return shadow_ratio(self.canopy_proportion, self.shadow_proportion)


def sample_from_stand(stand: SimulatedStand, engine: MetricEngine, scale_label: str) -> CalibrationSample:
    """Run the metric engine on both rasters of a simulated stand."""
    return CalibrationSample(
        observed=engine.compute(stand.observed_raster, stand.cell_size),
        true=engine.compute(stand.true_raster, stand.cell_size),
        canopy_proportion=stand.canopy_proportion,
        shadow_proportion=stand.shadow_proportion,
        scale_label=scale_label,
    )


# ---------------------------------------------------------------------------
# Single regression
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricRegression:
    """Fitted regression of one metric at one scale."""

    metric: str
    scale_label: str
    coefficients: tuple[float, ...]
    n_samples: int
    r_squared: float
    residual_std: float

    def predict(self, observed: float, canopy_proportion: float, ratio: float) -> float:
        row = design_matrix(observed, canopy_proportion, ratio)[0]
        return float(row @ np.asarray(self.coefficients))

    @classmethod
    def fit(cls, metric: str, scale_label: str, samples: Sequence[CalibrationSample]) -> MetricRegression:
        """Fit one metric from the samples where both values are defined.

        Raises:
            ModelFitError: With too few usable samples or a rank-deficient
                design (e.g. a predictor that never varies).
        """
        target = f"{metric} at scale '{scale_label}'"
        rows = [s for s in samples if s.observed.values.get(metric) is not None and s.true.values.get(metric) is not None]
        if len(rows) < MIN_SAMPLES:
            raise ModelFitError(target, f"{len(rows)} usable sample(s), need at least {MIN_SAMPLES}")

        x = np.array([s.observed[metric] for s in rows], dtype=np.float64)
        c = np.array([s.canopy_proportion for s in rows], dtype=np.float64)
        r = np.array([s.shadow_ratio for s in rows], dtype=np.float64)
        y = np.array([s.true[metric] for s in rows], dtype=np.float64)

        design = design_matrix(x, c, r)
        coef, _, rank, _ = np.linalg.lstsq(design, y, rcond=None)
        if rank < design.shape[1]:
            raise ModelFitError(target, f"design matrix is rank deficient (rank {rank} of {design.shape[1]})")
        if not np.all(np.isfinite(coef)):
            raise ModelFitError(target, "least squares produced non-finite coefficients")

        residuals = y - design @ coef
        ss_res = float(residuals @ residuals)
        ss_tot = float(((y - y.mean()) ** 2).sum())
        return cls(
            metric=metric,
            scale_label=scale_label,
            coefficients=tuple(float(b) for b in coef),
            n_samples=len(rows),
            r_squared=1.0 - ss_res / ss_tot if ss_tot > 0 else 1.0,
            residual_std=math.sqrt(ss_res / (len(rows) - design.shape[1])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "coefficients": dict(zip(TERM_NAMES, self.coefficients)),
            "n_samples": self.n_samples,
            "r_squared": self.r_squared,
            "residual_std": self.residual_std,
        }

    @classmethod
    def from_dict(cls, metric: str, scale_label: str, raw: dict[str, Any]) -> MetricRegression:
        coefficients = raw["coefficients"]
        return cls(
            metric=metric,
            scale_label=scale_label,
            coefficients=tuple(float(coefficients[t]) for t in TERM_NAMES),
            n_samples=int(raw["n_samples"]),
            r_squared=float(raw["r_squared"]),
            residual_std=float(raw["residual_std"]),
        )


# ---------------------------------------------------------------------------
# Full model
# ---------------------------------------------------------------------------


@dataclass
class CalibrationModel:
    """All regressions, keyed by scale label then metric name.

    Attributes:
        regressions: ``{scale: {metric: MetricRegression}}``.
        failures: ``{scale: {metric: reason}}`` for fits that failed.
        metadata: Free-form provenance (seed, sample counts, config).
    """

    regressions: dict[str, dict[str, MetricRegression]] = field(default_factory=dict)
    failures: dict[str, dict[str, str]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def fit(
        cls,
        samples: Iterable[CalibrationSample],
        metric_names: Sequence[str] = METRIC_NAMES,
        metadata: dict[str, Any] | None = None,
    ) -> CalibrationModel:
        """Fit one regression per metric per scale present in *samples*.

        A metric that cannot be fitted is logged and recorded in
        :attr:`failures`; the other metrics are unaffected.
        """
        by_scale: dict[str, list[CalibrationSample]] = defaultdict(list)
        for sample in samples:
            by_scale[sample.scale_label].append(sample)

        model = cls(metadata=dict(metadata or {}))
        for scale_label, scale_samples in by_scale.items():
            fitted: dict[str, MetricRegression] = {}
            failed: dict[str, str] = {}
            for metric in metric_names:
                try:
                    fitted[metric] = MetricRegression.fit(metric, scale_label, scale_samples)
                except ModelFitError as exc:
                    logger.warning("%s", exc.message)
                    failed[metric] = exc.message
            model.regressions[scale_label] = fitted
            model.failures[scale_label] = failed
            logger.info(
                "Scale %s: %d metric(s) fitted, %d failed, %d sample(s).",
                scale_label,
                len(fitted),
                len(failed),
                len(scale_samples),
            )
        return model

    @property
    def scales(self) -> tuple[str, ...]:
        return tuple(self.regressions)

    def regression(self, scale_label: str, metric: str) -> MetricRegression | None:
        return self.regressions.get(scale_label, {}).get(metric)

    def apply(
        self,
        vector: MetricVector,
        canopy_proportion: float,
        shadow_proportion: float,
        scale_label: str,
    ) -> MetricVector:
        """Calibrate an observed vector.

        Undefined metrics stay undefined.  Defined metrics without a fitted
        regression at *scale_label* are listed in ``uncalibrated``.
        """
        ratio = shadow_ratio(canopy_proportion, shadow_proportion)
        values: dict[str, float | None] = {}
        uncalibrated: set[str] = set()
        for name, value in vector.values.items():
            if value is None:
                values[name] = None
                continue
            regression = self.regression(scale_label, name)
            if regression is None:
                values[name] = value
                uncalibrated.add(name)
                continue
            values[name] = regression.predict(value, canopy_proportion, ratio)
        return MetricVector(
            values=values,
            status="calibrated",
            uncalibrated=frozenset(uncalibrated),
            input_error=vector.input_error,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        scales: dict[str, Any] = {}
        for scale_label in sorted(set(self.regressions) | set(self.failures)):
            scales[scale_label] = {
                "metrics": {
                    name: reg.to_dict() for name, reg in self.regressions.get(scale_label, {}).items()
                },
                "failures": dict(self.failures.get(scale_label, {})),
            }
        return {
            "format_version": MODEL_FORMAT_VERSION,
            "terms": list(TERM_NAMES),
            "scales": scales,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CalibrationModel:
        if raw.get("format_version") != MODEL_FORMAT_VERSION:
            raise InputValidationError(
                f"Unsupported calibration model format {raw.get('format_version')!r}; "
                f"expected {MODEL_FORMAT_VERSION}."
            )
        if list(raw.get("terms", [])) != list(TERM_NAMES):
            raise InputValidationError(f"Calibration model terms must be {list(TERM_NAMES)}.")
        model = cls(metadata=dict(raw.get("metadata", {})))
        try:
            for scale_label, entry in raw["scales"].items():
                model.regressions[scale_label] = {
                    name: MetricRegression.from_dict(name, scale_label, reg)
                    for name, reg in entry.get("metrics", {}).items()
                }
                model.failures[scale_label] = dict(entry.get("failures", {}))
        except (KeyError, TypeError, ValueError) as exc:
            raise InputValidationError(f"Malformed calibration model: {exc}") from exc
        return model

    def save(self, path: Path) -> Path:
        """Write the model as JSON.

        Raises:
            OutputWriteError: If the file cannot be written.
        """
        path = Path(path)
        Validators.assert_output_dir_writable(path)
        try:
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(self.to_dict(), fh, indent=2)
        except OSError as exc:
            raise OutputWriteError(str(path), str(exc)) from exc
        logger.info("Calibration model saved to %s", path)
        return path

    @classmethod
    def load(cls, path: Path) -> CalibrationModel:
        """Read a model written by :meth:`save`.

        Raises:
            InputValidationError: If the file is missing or malformed.
        """
        path = Path(path)
        Validators.assert_file_exists(path)
        try:
            with open(path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except json.JSONDecodeError as exc:
            raise InputValidationError(f"Calibration model '{path}' is not valid JSON: {exc}") from exc
        return cls.from_dict(raw)
