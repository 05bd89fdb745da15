"""
Canopy LSM Calibrator
=====================
Shadow-bias corrected landscape structure metrics from classified
canopy / shadow / other rasters.
"""

from canopy_lsm.calibration import CalibrationModel, CalibrationSample, MetricRegression
from canopy_lsm.config import (
    AllometryConfig,
    AnalysisConfig,
    PlotFilter,
    ScaleSpec,
    SimulationConfig,
)
from canopy_lsm.metrics import METRIC_NAMES, ContrastWeights, MetricEngine, MetricVector
from canopy_lsm.mosaic import MetricMosaic
from canopy_lsm.partition import AnalysisWindow, SublandscapePartitioner
from canopy_lsm.patches import Patch, PatchSet, delineate_patches
from canopy_lsm.pipeline import CalibrationFitTool, LandscapeMetricsTool
from canopy_lsm.raster import ClassifiedRaster, LandCoverClass
from canopy_lsm.simulation import ShadowSimulator, SimulatedStand

__version__ = "0.1.0"

__all__ = [
    "LandscapeMetricsTool",
    "CalibrationFitTool",
    "ClassifiedRaster",
    "LandCoverClass",
    "Patch",
    "PatchSet",
    "delineate_patches",
    "MetricEngine",
    "MetricVector",
    "ContrastWeights",
    "METRIC_NAMES",
    "SublandscapePartitioner",
    "AnalysisWindow",
    "MetricMosaic",
    "ShadowSimulator",
    "SimulatedStand",
    "CalibrationModel",
    "CalibrationSample",
    "MetricRegression",
    "AnalysisConfig",
    "ScaleSpec",
    "SimulationConfig",
    "AllometryConfig",
    "PlotFilter",
]
