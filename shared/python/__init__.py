"""
Canopy LSM — Shared Python Package
===================================
Re-exports the shared base class, exception hierarchy, and validator
utilities so tool modules can import from a single location::

    from shared.python import GeoTool, Validators
    from shared.python.exceptions import ConfigurationError
"""

from shared.python.base_tool import GeoTool
from shared.python.exceptions import (
    CanopyLSMError,
    ColumnNotFoundError,
    ConfigurationError,
    InputDataError,
    InputValidationError,
    ModelFitError,
    OutputWriteError,
    RasterError,
    UndefinedMetricError,
)
from shared.python.validators import Validators

__all__ = [
    "GeoTool",
    "Validators",
    "CanopyLSMError",
    "InputValidationError",
    "ColumnNotFoundError",
    "ConfigurationError",
    "RasterError",
    "InputDataError",
    "UndefinedMetricError",
    "ModelFitError",
    "OutputWriteError",
]
