"""
Canopy LSM — Custom Exception Hierarchy
========================================
Every module in the project raises exceptions from this module so callers can
catch them at the right level of granularity.

Hierarchy::

    CanopyLSMError                       ← catch-all base
    ├── InputValidationError             ← bad files, missing columns, etc.
    │   └── ColumnNotFoundError          ← CSV/table column missing
    ├── ConfigurationError               ← invalid scale/step/edge-depth, fatal
    ├── RasterError                      ← rasterio / numpy raster issues
    │   └── InputDataError               ← malformed or empty analysis window
    ├── UndefinedMetricError             ← metric not computable for a window
    ├── ModelFitError                    ← calibration / distribution fit failed
    └── OutputWriteError                 ← cannot write to output path

Usage::

    from shared.python.exceptions import ConfigurationError

    raise ConfigurationError("step_fraction", "must be in (0, 1]")
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class CanopyLSMError(Exception):
    """Base exception for the whole project.

    Catch this to handle any project-specific error without caring about
    the exact subtype.

    Args:
        message: Human-readable description of the error.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(CanopyLSMError):
    """Raised when a tool's inputs fail pre-processing validation.

    This is the parent class for more specific input problems.
    """


class ColumnNotFoundError(InputValidationError):
    """Raised when an expected column is absent from a tabular dataset.

    Args:
        column: The name of the missing column.
        available: List of column names that ARE present, used to
                   generate a helpful error message.

    Example::

        raise ColumnNotFoundError("diameter_cm", df.columns.tolist())
    """

    def __init__(self, column: str, available: list[str]) -> None:
        available_str = ", ".join(f"'{c}'" for c in available)
        super().__init__(
            f"Column '{column}' not found. Available columns: {available_str}"
        )
        self.column: str = column
        self.available: list[str] = available


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(CanopyLSMError):
    """Raised when a configuration option, or a combination of options,
    cannot be honoured.

    Always fatal: tools raise it from ``validate_inputs`` before any
    window is processed.

    Args:
        option: Name of the offending option (e.g. ``"step_fraction"``).
        reason: Short explanation of what is wrong with it.

    Example::

        raise ConfigurationError("edge_depth", "must be a positive integer")
    """

    def __init__(self, option: str, reason: str) -> None:
        super().__init__(f"Invalid configuration for '{option}': {reason}")
        self.option: str = option
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Raster
# ---------------------------------------------------------------------------


class RasterError(CanopyLSMError):
    """Raised for general raster processing failures (rasterio / numpy).

    Subclass this for more specific raster errors.
    """


class InputDataError(RasterError):
    """Raised when an analysis window holds no usable class cells.

    Recovered locally: the window's metrics are marked undefined and the
    run continues.

    Args:
        reason: What is wrong with the window data.
        window_id: Optional identifier of the window, for log messages.
    """

    def __init__(self, reason: str, window_id: str | None = None) -> None:
        where = f" in window {window_id}" if window_id else ""
        super().__init__(f"Unusable input data{where}: {reason}")
        self.reason: str = reason
        self.window_id: str | None = window_id


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class UndefinedMetricError(CanopyLSMError):
    """Raised when a metric cannot be computed for a window.

    Covers both the structurally inapplicable case (no contrast weight for
    a class pairing) and the mathematically undefined case (no neighbours,
    zero denominator).  The metric engine converts it to an explicit
    undefined value; it never escapes a window computation.

    Args:
        metric: Metric acronym (e.g. ``"ENN_MN"``).
        reason: Why the value is undefined.
    """

    def __init__(self, metric: str, reason: str) -> None:
        super().__init__(f"{metric} is undefined: {reason}")
        self.metric: str = metric
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Model fitting
# ---------------------------------------------------------------------------


class ModelFitError(CanopyLSMError):
    """Raised when a regression or distribution fit cannot be produced.

    Args:
        target: What was being fitted (e.g. ``"AREA_MN @ 1_acre"``).
        reason: Short explanation of why fitting failed.

    Example::

        raise ModelFitError("ENN_CV @ 1_acre", "only 3 samples for 7 parameters")
    """

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"Cannot fit {target}: {reason}")
        self.target: str = target
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(CanopyLSMError):
    """Raised when the tool cannot write its output to disk.

    Args:
        output_path: String representation of the path that failed.
        reason: Underlying OS or library error message.

    Example::

        raise OutputWriteError("/read-only/dir/out.tif", "Permission denied")
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to write output to '{output_path}': {reason}"
        )
        self.output_path: str = output_path
        self.reason: str = reason
