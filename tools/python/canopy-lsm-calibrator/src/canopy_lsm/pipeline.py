"""
pipeline.py
===========
The two runnable tools of the package.

:class:`LandscapeMetricsTool`
    Production path.  Partitions a classified GeoTIFF into analysis windows
    at every configured scale, computes the metrics of each window on a
    thread pool, optionally calibrates them, and writes one observed and one
    calibrated multi-band raster per scale.

:class:`CalibrationFitTool`
    One-off batch step.  Simulates stands at every scale, measures each with
    and without shadow, fits the calibration model and saves it as JSON.

Both follow the :class:`~shared.python.GeoTool` template method
(validate → process → report).
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from shared.python.base_tool import GeoTool
from shared.python.exceptions import InputValidationError
from shared.python.validators import Validators

from .calibration import CalibrationModel, CalibrationSample, sample_from_stand
from .config import AnalysisConfig, ScaleSpec, SimulationConfig
from .inventory import fit_stand_distributions, load_tree_table
from .metrics import MetricEngine
from .mosaic import MetricMosaic, output_name
from .partition import AnalysisWindow, SublandscapePartitioner
from .raster import ClassifiedRaster, LandCoverClass, class_proportions
from .simulation import ShadowSimulator

logger = logging.getLogger("canopylsm.pipeline")


@dataclass
class ScaleResult:
    """Outcome of one scale of a production run."""

    scale_label: str
    output_paths: list[Path] = field(default_factory=list)
    windows_total: int = 0
    windows_written: int = 0
    windows_skipped: int = 0
    windows_input_error: int = 0
    cancelled: bool = False

    def __str__(self) -> str:
        state = " (cancelled)" if self.cancelled else ""
        return (
            f"{self.scale_label}: {self.windows_written}/{self.windows_total} windows written, "
            f"{self.windows_skipped} skipped, {self.windows_input_error} unusable{state}"
        )


# ---------------------------------------------------------------------------
# Production metrics
# ---------------------------------------------------------------------------


class LandscapeMetricsTool(GeoTool):
    """Compute (and calibrate) landscape metrics for a classified raster.

    Output files are named ``<stem>_<scale>_observed.tif`` and
    ``<stem>_<scale>_calibrated.tif`` inside *output_dir*.

    Args:
        input_path: Single-band classified GeoTIFF (0 Canopy, 1 Shadow,
                    2 Other).
        output_dir: Directory for the output rasters.
        config: Analysis options; defaults to :class:`AnalysisConfig`.
        model: A fitted calibration model.
        model_path: JSON file to load the model from (ignored when
                    *model* is given).  Without a model only observed
                    rasters are written.
        verbose: Enable DEBUG-level logging.

    Example::

        tool = LandscapeMetricsTool(
            Path("tiles/m_3008901_ne_16_1_classified.tif"),
            Path("output/"),
            AnalysisConfig(sampling_mode="overlapping", step_fraction=0.5),
            model_path=Path("models/calibration.json"),
        )
        tool.run()
        for result in tool.results:
            print(result)
    """

    def __init__(
        self,
        input_path: Path,
        output_dir: Path,
        config: AnalysisConfig | None = None,
        *,
        model: CalibrationModel | None = None,
        model_path: Path | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(input_path, output_dir, verbose=verbose)
        self.config = config or AnalysisConfig()
        self.model = model
        self.model_path = Path(model_path) if model_path is not None else None
        self._raster: ClassifiedRaster | None = None
        self._results: list[ScaleResult] = []
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # GeoTool abstract method implementations
    # ------------------------------------------------------------------

    def validate_inputs(self) -> None:
        """Check the input raster, configuration and model.

        Raises:
            InputValidationError: If the raster or model file is missing or
                malformed.
            ConfigurationError: If the options are invalid for this raster.
            OutputWriteError: If the output directory cannot be created.
        """
        Validators.assert_file_exists(self.input_path)
        Validators.assert_supported_extension(self.input_path, [".tif", ".tiff"])
        self.config.validate()

        self._raster = ClassifiedRaster.from_file(self.input_path)
        self.config.validate_for_raster(self._raster.cell_size, self._raster.shape)

        if self.model is None and self.model_path is not None:
            self.model = CalibrationModel.load(self.model_path)
        if self.model is not None:
            self._check_model(self.model, self._raster.cell_size)

        self.output_path.mkdir(parents=True, exist_ok=True)
        shares = self._raster.proportions()
        logger.debug(
            "Inputs validated: %dx%d cells at %.3f m, canopy %.3f, shadow %.3f, %d scale(s).",
            *self._raster.shape,
            self._raster.cell_size,
            shares[LandCoverClass.CANOPY],
            shares[LandCoverClass.SHADOW],
            len(self.config.scales),
        )

    def process(self) -> None:
        """Process every scale in turn; stops early when cancelled."""
        assert self._raster is not None, "validate_inputs() must run first"
        self._results = []
        engine = self.config.metric_engine()
        for scale in self.config.scales:
            result = self._process_scale(self._raster, scale, engine)
            self._results.append(result)
            logger.info("  %s", result)
            if result.cancelled:
                break

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop at window granularity.  Unprocessed cells stay nodata."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def results(self) -> list[ScaleResult]:
        """One :class:`ScaleResult` per processed scale, or ``[]``."""
        return self._results

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _check_model(self, model: CalibrationModel, cell_size: float) -> None:
        for scale in self.config.scales:
            if scale.label not in model.scales:
                logger.warning(
                    "Calibration model has no regressions for scale '%s'; "
                    "its calibrated raster will be flagged uncalibrated.",
                    scale.label,
                )
            elif model.failures.get(scale.label):
                logger.warning(
                    "Scale '%s': no calibration for %s.",
                    scale.label,
                    ", ".join(sorted(model.failures[scale.label])),
                )
        fitted_cell_size = model.metadata.get("cell_size")
        if fitted_cell_size is not None and abs(float(fitted_cell_size) - cell_size) > 1e-6:
            logger.warning(
                "Calibration model was fitted at %.3f m cells but the raster has %.3f m cells.",
                float(fitted_cell_size),
                cell_size,
            )

    def _process_scale(self, raster: ClassifiedRaster, scale: ScaleSpec, engine: MetricEngine) -> ScaleResult:
        cfg = self.config
        partitioner = SublandscapePartitioner(
            raster.shape,
            raster.cell_size,
            scale,
            mode=cfg.sampling_mode,
            step_fraction=cfg.effective_step_fraction,
            transform=raster.transform,
        )
        logger.info("Processing %r with %d worker(s)", partitioner, cfg.workers)

        mosaics = {
            status: MetricMosaic(
                partitioner.output_shape,
                partitioner.output_transform,
                raster.crs,
                scale_label=scale.label,
                status=status,
                boundary_policy=cfg.boundary_policy,
                metric_names=engine.metric_names,
                tags=partitioner.geometry_tags(),
            )
            for status in (("observed", "calibrated") if self.model is not None else ("observed",))
        }

        windows = list(partitioner)
        result = ScaleResult(scale_label=scale.label, windows_total=len(windows))
        queue = [w for w in windows if not (w.is_partial and cfg.boundary_policy == "exclude")]
        result.windows_skipped = len(windows) - len(queue)

        with ThreadPoolExecutor(max_workers=cfg.workers) as pool:
            futures = {
                pool.submit(self._process_window, raster, window, engine, mosaics): window
                for window in queue
            }
            for future in as_completed(futures):
                outcome = future.result()
                if outcome is None:
                    result.cancelled = True
                    continue
                result.windows_written += 1
                if outcome:
                    result.windows_input_error += 1

        if self._cancel.is_set():
            result.cancelled = True
            logger.warning(
                "Run cancelled at scale '%s' after %d of %d window(s).",
                scale.label,
                result.windows_written,
                len(queue),
            )

        stem = self.input_path.stem
        for status, mosaic in mosaics.items():
            out_path = self.output_path / output_name(stem, scale.label, status)
            result.output_paths.extend(mosaic.to_geotiff(out_path))
        return result

    def _process_window(
        self,
        raster: ClassifiedRaster,
        window: AnalysisWindow,
        engine: MetricEngine,
        mosaics: dict[str, MetricMosaic],
    ) -> bool | None:
        """Compute, calibrate and write one window.

        Returns:
            ``None`` when skipped because of cancellation, otherwise whether
            the window was unusable (all metrics undefined).
        """
        if self._cancel.is_set():
            return None
        grid = raster.window(*window.bounds)
        observed = engine.compute(grid, raster.cell_size, window_id=window.window_id)
        mosaics["observed"].write(window, observed)

        if "calibrated" in mosaics:
            assert self.model is not None
            proportions = class_proportions(grid)
            calibrated = self.model.apply(
                observed,
                proportions[LandCoverClass.CANOPY],
                proportions[LandCoverClass.SHADOW],
                window.scale_label,
            )
            mosaics["calibrated"].write(window, calibrated)
        return observed.input_error


# ---------------------------------------------------------------------------
# Calibration fitting
# ---------------------------------------------------------------------------


class CalibrationFitTool(GeoTool):
    """Simulate stands and fit the shadow-bias calibration model.

    Args:
        output_path: JSON file the fitted model is written to.
        analysis: Metric options.  Must match the production run so the
                  model sees the same metric definitions.
        simulation: Simulator options.
        tree_table: Optional inventory CSV.  When given, the stem-count and
                    diameter distributions are fitted from it with
                    ``simulation.plot_filter``; otherwise the configured
                    distributions are used.
        verbose: Enable DEBUG-level logging.

    Example::

        tool = CalibrationFitTool(
            Path("models/calibration.json"),
            AnalysisConfig(scales=[ScaleSpec.from_acres(1)]),
            SimulationConfig(n_samples=500, seed=7),
            tree_table=Path("inventory/trees.csv"),
        )
        tool.run()
    """

    def __init__(
        self,
        output_path: Path,
        analysis: AnalysisConfig | None = None,
        simulation: SimulationConfig | None = None,
        *,
        tree_table: Path | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(tree_table, output_path, verbose=verbose)
        self.tree_table = self.input_path
        self.analysis = analysis or AnalysisConfig()
        self.simulation = simulation or SimulationConfig()
        self.model: CalibrationModel | None = None
        self.samples: list[CalibrationSample] = []

    def validate_inputs(self) -> None:
        """Check the configuration, tree table and output path.

        Raises:
            ConfigurationError: On invalid analysis or simulation options.
            InputValidationError: If the tree table or output name is invalid.
            OutputWriteError: If the output directory cannot be created.
        """
        self.analysis.validate()
        self.simulation.validate()
        if self.tree_table is not None:
            Validators.assert_file_exists(self.tree_table)
            Validators.assert_supported_extension(self.tree_table, [".csv"])
        Validators.assert_supported_extension(self.output_path, [".json"])
        Validators.assert_output_dir_writable(self.output_path)

        largest = max(self.analysis.scales, key=lambda s: s.area_m2)
        side = ShadowSimulator(self.simulation).side_cells(largest.area_m2)
        self.analysis.validate_for_raster(self.simulation.cell_size, (side, side))

    def process(self) -> None:
        """Simulate, measure, fit and save."""
        sim_config = self.simulation
        if self.tree_table is not None:
            trees = load_tree_table(self.tree_table)
            fitted = fit_stand_distributions(trees, sim_config.plot_filter, sim_config.plot_area_acres)
            sim_config = dataclasses.replace(
                sim_config, stem_count=fitted.stem_count, diameter=fitted.diameter
            )

        engine = self.analysis.metric_engine()
        simulator = ShadowSimulator(sim_config)
        self.samples = []
        for scale in self.analysis.scales:
            logger.info("Scale %s: simulating %d stand(s)", scale.label, sim_config.n_samples)
            for stand in simulator.simulate(scale.area_m2):
                self.samples.append(sample_from_stand(stand, engine, scale.label))

        if not self.samples:
            raise InputValidationError("No calibration samples were simulated.")

        self.model = CalibrationModel.fit(
            self.samples,
            engine.metric_names,
            metadata=self._metadata(sim_config),
        )
        self.model.save(self.output_path)

    def _metadata(self, sim_config: SimulationConfig) -> dict:
        return {
            "n_samples": sim_config.n_samples,
            "seed": sim_config.seed,
            "cell_size": sim_config.cell_size,
            "scales": {s.label: s.area_m2 for s in self.analysis.scales},
            "edge_depth": self.analysis.edge_depth,
            "connectivity": dict(self.analysis.connectivity),
            "focal_class": self.analysis.focal_class,
            "stem_count": dataclasses.asdict(sim_config.stem_count),
            "diameter": dataclasses.asdict(sim_config.diameter),
            "tree_table": str(self.tree_table) if self.tree_table else None,
        }
