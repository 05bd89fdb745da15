"""
partition.py
============
Divide a classified raster into analysis windows (sublandscapes).

Two sampling modes are supported:

``disjoint``
    Non-overlapping windows tile the raster.  The output raster has one cell
    per window, so its resolution equals the window side.

``overlapping`` (block subsampling)
    The window slides by ``step = side * step_fraction`` cells.  Every output
    cell is ``step`` cells wide and holds the metrics of the one window whose
    centroid falls in it, so the output is ``1 / step_fraction`` times finer
    than in disjoint mode.  With ``step_fraction = 1`` the windows are exactly
    the disjoint ones.

Windows at the raster edge may extend past it; they are returned with
``is_partial=True`` and clipped bounds, and the mosaicker decides whether to
keep them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, Literal

from rasterio.transform import Affine

from shared.python.exceptions import ConfigurationError

from .config import ScaleSpec

logger = logging.getLogger("canopylsm.partition")

SamplingMode = Literal["disjoint", "overlapping"]


@dataclass(frozen=True)
class AnalysisWindow:
    """One sublandscape of the input raster.

    Attributes:
        row_start: First raster row of the full window (may be negative).
        col_start: First raster column of the full window (may be negative).
        size: Window side in cells.
        row_stop: Clipped exclusive stop row.
        col_stop: Clipped exclusive stop column.
        out_row: Output raster row holding this window's values.
        out_col: Output raster column holding this window's values.
        centroid: Map ``(x, y)`` of the full window's centre.
        step_offset: ``(row, col)`` offset of the window start from the
                     start of its output cell, in cells (``<= 0``).
        scale_label: Token of the scale the window belongs to.
        is_partial: ``True`` when the window extends past the raster edge.
    """

    row_start: int
    col_start: int
    size: int
    row_stop: int
    col_stop: int
    out_row: int
    out_col: int
    centroid: tuple[float, float]
    step_offset: tuple[int, int]
    scale_label: str
    is_partial: bool

    @property
    def window_id(self) -> str:
        return f"{self.scale_label}[{self.out_row},{self.out_col}]"

    @property
    def bounds(self) -> tuple[int, int, int, int]:
        """Clipped ``(row_start, row_stop, col_start, col_stop)``."""
        return (max(0, self.row_start), self.row_stop, max(0, self.col_start), self.col_stop)

    @property
    def output_cell(self) -> tuple[int, int]:
        return (self.out_row, self.out_col)


class SublandscapePartitioner:
    """Generate the analysis windows of one raster at one scale.

    Args:
        shape: ``(rows, cols)`` of the input raster.
        cell_size: Input cell size in metres.
        scale: Target window area.
        mode: ``"disjoint"`` or ``"overlapping"``.
        step_fraction: Step as a fraction of the window side.  Must give a
                       whole number of cells that divides the side evenly.
                       Ignored in disjoint mode.
        transform: Affine transform of the input raster; defaults to a unit
                   grid with the origin at the upper-left corner.

    Raises:
        ConfigurationError: If the scale is smaller than one cell or the
            step does not divide the window evenly.

    Example::

        partitioner = SublandscapePartitioner(
            raster.shape, raster.cell_size, ScaleSpec.from_acres(1),
            mode="overlapping", step_fraction=0.5, transform=raster.transform,
        )
        for window in partitioner:
            grid = raster.window(*window.bounds)
    """

    def __init__(
        self,
        shape: tuple[int, int],
        cell_size: float,
        scale: ScaleSpec,
        *,
        mode: SamplingMode = "disjoint",
        step_fraction: float = 1.0,
        transform: Affine | None = None,
    ) -> None:
        if mode not in ("disjoint", "overlapping"):
            raise ConfigurationError("sampling_mode", f"unknown mode {mode!r}")
        if cell_size <= 0:
            raise ConfigurationError("cell_size", f"must be positive (got {cell_size!r})")

        self.rows, self.cols = int(shape[0]), int(shape[1])
        self.cell_size = float(cell_size)
        self.scale = scale
        self.mode = mode
        self.transform = transform if transform is not None else Affine.scale(cell_size, -cell_size)

        self.window_cells = int(round(math.sqrt(scale.area_m2) / self.cell_size))
        if self.window_cells < 1:
            raise ConfigurationError(
                "scale",
                f"'{scale.label}' ({scale.area_m2:g} m²) is smaller than one {cell_size:g} m cell",
            )

        if mode == "disjoint":
            self.step_fraction = 1.0
            self.step = self.window_cells
        else:
            self.step_fraction = float(step_fraction)
            self.step = self._step_cells(self.window_cells, self.step_fraction)
        self.steps_per_window = self.window_cells // self.step

        if self.window_cells > min(self.rows, self.cols):
            logger.warning(
                "Window side %d cells exceeds the raster (%dx%d); every window is partial.",
                self.window_cells,
                self.rows,
                self.cols,
            )

    @staticmethod
    def _step_cells(window_cells: int, step_fraction: float) -> int:
        if not 0.0 < step_fraction <= 1.0:
            raise ConfigurationError("step_fraction", f"must be in (0, 1] (got {step_fraction!r})")
        exact = window_cells * step_fraction
        step = int(round(exact))
        if step < 1 or not math.isclose(exact, step, abs_tol=1e-6) or window_cells % step:
            raise ConfigurationError(
                "step_fraction",
                f"{step_fraction:g} of a {window_cells}-cell window is not a whole number "
                "of cells dividing the window evenly",
            )
        return step

    # ------------------------------------------------------------------
    # Output grid
    # ------------------------------------------------------------------

    @property
    def output_shape(self) -> tuple[int, int]:
        return (math.ceil(self.rows / self.step), math.ceil(self.cols / self.step))

    @property
    def output_cell_size(self) -> float:
        """Output resolution in metres."""
        return self.step * self.cell_size

    @property
    def output_transform(self) -> Affine:
        return self.transform * Affine.scale(self.step)

    @property
    def window_centre_offset(self) -> float:
        """Where window centres fall inside their output cell, in output cells.

        ``0.5`` is the cell centre (an odd number of steps per window, which
        includes disjoint mode); ``0.0`` is the cell's upper-left corner.
        """
        return (self.steps_per_window % 2) / 2.0

    def geometry_tags(self) -> dict[str, str]:
        """Window geometry as GeoTIFF tags for the output rasters."""
        offset = self.window_centre_offset
        return {
            "sampling_mode": self.mode,
            "window_cells": str(self.window_cells),
            "step_cells": str(self.step),
            "window_size_m": f"{self.window_cells * self.cell_size:g}",
            "window_centre_offset": f"{offset:g}",
            "window_centre": "cell_centre" if offset else "cell_upper_left",
        }

    def __len__(self) -> int:
        rows, cols = self.output_shape
        return rows * cols

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def window_for(self, out_row: int, out_col: int) -> AnalysisWindow:
        """The window whose values go to output cell ``(out_row, out_col)``.

        The window is centred on the output cell; when it spans an even
        number of steps its centre falls on the upper-left corner of the cell.
        """
        lead = (self.steps_per_window // 2) * self.step
        row_start = out_row * self.step - lead
        col_start = out_col * self.step - lead
        size = self.window_cells
        row_stop = min(self.rows, row_start + size)
        col_stop = min(self.cols, col_start + size)
        is_partial = row_start < 0 or col_start < 0 or row_start + size > self.rows or col_start + size > self.cols
        x, y = self.transform * (col_start + size / 2.0, row_start + size / 2.0)
        return AnalysisWindow(
            row_start=row_start,
            col_start=col_start,
            size=size,
            row_stop=row_stop,
            col_stop=col_stop,
            out_row=out_row,
            out_col=out_col,
            centroid=(x, y),
            step_offset=(-lead, -lead),
            scale_label=self.scale.label,
            is_partial=is_partial,
        )

    def windows(self) -> Iterator[AnalysisWindow]:
        """Yield every window in row-major output order."""
        out_rows, out_cols = self.output_shape
        for out_row in range(out_rows):
            for out_col in range(out_cols):
                yield self.window_for(out_row, out_col)

    def __iter__(self) -> Iterator[AnalysisWindow]:
        return self.windows()

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(scale={self.scale.label!r}, mode={self.mode!r}, "
            f"window={self.window_cells} cells, step={self.step} cells, output={self.output_shape})"
        )
