"""
Canopy LSM — Shared Input Validators
=====================================
Static utility methods used across the project to validate common
preconditions before processing begins.

All methods raise an appropriate exception from
:mod:`shared.python.exceptions` rather than returning booleans, so
``validate_inputs`` implementations stay short::

    class MyTool(GeoTool):
        def validate_inputs(self) -> None:
            Validators.assert_file_exists(self.input_path)
            Validators.assert_supported_extension(self.input_path, [".tif"])
            Validators.assert_positive("cell_size", self.cell_size)
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Sequence

# pandas is only needed by assert_columns_exist and is typed loosely there
# so that importing the validators does not pull it in.

from shared.python.exceptions import (
    ColumnNotFoundError,
    ConfigurationError,
    InputValidationError,
    OutputWriteError,
)


class Validators:
    """Collection of static precondition checks shared across the project.

    Never instantiated; used as a namespace.
    """

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_file_exists(path: Path) -> None:
        """Assert that *path* points to an existing regular file.

        Args:
            path: Path object to check.

        Raises:
            InputValidationError: If *path* does not exist or is a
                directory rather than a file.

        Example::

            Validators.assert_file_exists(Path("data/tile_0001.tif"))
        """
        path = Path(path)
        if not path.exists():
            raise InputValidationError(
                f"Input file not found: '{path}'. "
                "Check that the path is correct and the file exists."
            )
        if path.is_dir():
            raise InputValidationError(
                f"Expected a file but got a directory: '{path}'."
            )

    @staticmethod
    def assert_output_dir_writable(output_path: Path) -> None:
        """Assert that the parent directory of *output_path* is writable.

        Creates the parent directory (and any missing parents) if it does
        not yet exist.

        Args:
            output_path: Intended output file path.  The parent directory
                         is created if absent.

        Raises:
            OutputWriteError: If the parent directory cannot be created.
        """
        parent = Path(output_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(output_path), str(exc)) from exc

    @staticmethod
    def assert_supported_extension(path: Path, extensions: Sequence[str]) -> None:
        """Assert that *path* has one of the allowed file extensions.

        Args:
            path: File path to check.
            extensions: Sequence of allowed extensions, each starting with
                        a dot (e.g. ``[".tif", ".tiff"]``).

        Raises:
            InputValidationError: If the file extension is not in
                *extensions*.
        """
        path = Path(path)
        suffix = path.suffix.lower()
        allowed = [ext.lower() for ext in extensions]
        if suffix not in allowed:
            raise InputValidationError(
                f"Unsupported file extension '{suffix}' for '{path.name}'. "
                f"Accepted extensions: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # Tabular data checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_columns_exist(
        df: object,  # pandas DataFrame
        required_columns: Sequence[str],
    ) -> None:
        """Assert that all *required_columns* are present in *df*.

        Args:
            df: A ``pandas.DataFrame``.
            required_columns: List of column names that must be present.

        Raises:
            ColumnNotFoundError: On the first missing column found.

        Example::

            Validators.assert_columns_exist(trees, ["plot_id", "diameter_cm"])
        """
        available = list(df.columns)  # type: ignore[union-attr]
        for col in required_columns:
            if col not in available:
                raise ColumnNotFoundError(col, available)

    # ------------------------------------------------------------------
    # Configuration checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_positive(option: str, value: float) -> None:
        """Assert that a numeric option is finite and strictly positive.

        Raises:
            ConfigurationError: If *value* is zero, negative, or not finite.
        """
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            raise ConfigurationError(option, f"must be a positive number (got {value!r})")

    @staticmethod
    def assert_positive_int(option: str, value: int) -> None:
        """Assert that an option is a strictly positive integer.

        Raises:
            ConfigurationError: If *value* is not an ``int`` or is < 1.
        """
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(option, f"must be a positive integer (got {value!r})")

    @staticmethod
    def assert_choice(option: str, value: object, choices: Sequence[object]) -> None:
        """Assert that *value* is one of *choices*.

        Raises:
            ConfigurationError: If *value* is not in *choices*.
        """
        if value not in choices:
            allowed = ", ".join(repr(c) for c in choices)
            raise ConfigurationError(option, f"must be one of {allowed} (got {value!r})")
