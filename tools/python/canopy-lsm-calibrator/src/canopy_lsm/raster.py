"""
raster.py
=========
Classified canopy / shadow / other rasters.

A :class:`ClassifiedRaster` is the immutable input of every computation in
the package: a single band of integer class codes plus the georeferencing
needed to place analysis windows and write output rasters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

import numpy as np
import numpy.typing as npt
import rasterio
from rasterio.crs import CRS
from rasterio.transform import Affine, from_origin

from shared.python.exceptions import InputValidationError, RasterError

logger = logging.getLogger("canopylsm.raster")

# Cell value used for anything outside the three recognised classes.
INVALID_CELL = 255


class LandCoverClass(IntEnum):
    """Integer class codes produced by the upstream classifier."""

    CANOPY = 0
    SHADOW = 1
    OTHER = 2


VALID_CLASSES: tuple[int, ...] = tuple(int(c) for c in LandCoverClass)


def valid_mask(grid: npt.NDArray) -> npt.NDArray[np.bool_]:
    """Boolean mask of cells holding one of the recognised class codes."""
    return np.isin(grid, VALID_CLASSES)


def class_proportions(grid: npt.NDArray) -> dict[LandCoverClass, float]:
    """Fraction of valid cells in each class.

    Returns all zeros for a grid without valid cells.
    """
    valid = valid_mask(grid)
    n_valid = int(valid.sum())
    if n_valid == 0:
        return {cls: 0.0 for cls in LandCoverClass}
    counts = np.bincount(grid[valid].astype(np.int64), minlength=len(VALID_CLASSES))
    return {cls: float(counts[int(cls)]) / n_valid for cls in LandCoverClass}


@dataclass(frozen=True)
class ClassifiedRaster:
    """Immutable single-band class raster.

    Attributes:
        data: 2-D ``uint8`` array of class codes.  Cells not in
              :data:`VALID_CLASSES` are treated as invalid.
        cell_size: Linear ground resolution in metres (square cells).
        transform: Affine transform of the upper-left corner.
        crs: Coordinate reference system, or ``None`` when unknown.
    """

    data: npt.NDArray[np.uint8]
    cell_size: float
    transform: Affine
    crs: CRS | None = None

    def __post_init__(self) -> None:
        if self.data.ndim != 2:
            raise InputValidationError(
                f"Classified raster must be 2-D, got shape {self.data.shape}."
            )
        if self.cell_size <= 0:
            raise InputValidationError(f"Cell size must be positive, got {self.cell_size}.")
        # Freeze the array so windows can be shared across worker threads.
        self.data.setflags(write=False)

    @classmethod
    def from_array(
        cls,
        data: npt.ArrayLike,
        cell_size: float = 1.0,
        *,
        origin: tuple[float, float] = (0.0, 0.0),
        crs: CRS | str | None = None,
    ) -> ClassifiedRaster:
        """Build a raster from an in-memory array.

        Args:
            data: 2-D array of class codes.
            cell_size: Cell size in metres.
            origin: ``(x, y)`` of the upper-left corner.
            crs: Optional CRS (anything :meth:`rasterio.crs.CRS.from_user_input` accepts).
        """
        arr = np.array(data, dtype=np.uint8, copy=True)
        transform = from_origin(origin[0], origin[1], cell_size, cell_size)
        resolved = CRS.from_user_input(crs) if crs is not None else None
        return cls(data=arr, cell_size=float(cell_size), transform=transform, crs=resolved)

    @classmethod
    def from_file(cls, path: Path) -> ClassifiedRaster:
        """Read band 1 of a classified GeoTIFF.

        Nodata cells and any value outside the class codes are mapped to
        :data:`INVALID_CELL`.

        Raises:
            InputValidationError: If the raster has more than one band or
                non-square cells.
            RasterError: If rasterio cannot read the file.
        """
        try:
            with rasterio.open(path) as src:
                if src.count != 1:
                    raise InputValidationError(
                        f"Expected a single-band classified raster, '{path}' has {src.count} bands."
                    )
                cell_w, cell_h = abs(src.transform.a), abs(src.transform.e)
                if not np.isclose(cell_w, cell_h, rtol=1e-3):
                    raise InputValidationError(
                        f"Non-square cells ({cell_w} x {cell_h}) are not supported: '{path}'."
                    )
                band = src.read(1, masked=True)
                transform = src.transform
                crs = src.crs
        except rasterio.errors.RasterioIOError as exc:
            raise RasterError(f"Could not open raster '{path}': {exc}") from exc

        raw = np.asarray(band.filled(INVALID_CELL))
        data = np.where(np.isin(raw, VALID_CLASSES), raw, INVALID_CELL).astype(np.uint8)
        logger.debug(
            "Read %s: %dx%d cells at %.3f m", Path(path).name, data.shape[0], data.shape[1], cell_w
        )
        return cls(data=data, cell_size=float(cell_w), transform=transform, crs=crs)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape  # type: ignore[return-value]

    def window(self, row_start: int, row_stop: int, col_start: int, col_stop: int) -> npt.NDArray[np.uint8]:
        """Return a copy of the cells in ``[row_start:row_stop, col_start:col_stop]``.

        Bounds are clipped to the raster extent.
        """
        rows, cols = self.shape
        r0, r1 = max(0, row_start), min(rows, row_stop)
        c0, c1 = max(0, col_start), min(cols, col_stop)
        return np.array(self.data[r0:r1, c0:c1], copy=True)

    def proportions(self) -> dict[LandCoverClass, float]:
        """Class proportions over the whole raster."""
        return class_proportions(self.data)
