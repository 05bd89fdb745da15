"""
mosaic.py
=========
Assemble per-window metric vectors into a multi-band output raster.

A :class:`MetricMosaic` owns the output arrays of one scale and one
calibration status.  Worker threads hand it ``(window, vector)`` pairs; each
pair is written to the window's output cell under a lock, and writing the
same cell twice is an error, so concurrent processing can never overwrite a
result.  Cells no window reached keep the nodata value.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping, Sequence

import numpy as np
import numpy.typing as npt
import rasterio
from rasterio.crs import CRS
from rasterio.transform import Affine

from shared.python.exceptions import OutputWriteError, RasterError

from .metrics import (
    METRIC_NAMES,
    NODATA_VALUE,
    UNCALIBRATED_VALUE,
    UNDEFINED_VALUE,
    MetricVector,
)
from .partition import AnalysisWindow

logger = logging.getLogger("canopylsm.mosaic")

BoundaryPolicy = Literal["exclude", "flag"]
OutputStatus = Literal["observed", "calibrated"]


def output_name(stem: str, scale_label: str, status: OutputStatus) -> str:
    """File name of an output raster, e.g. ``tile_1_acre_calibrated.tif``."""
    return f"{stem}_{scale_label}_{status}.tif"


def boundary_name(path: Path) -> Path:
    """Companion boundary-mask path of an output raster."""
    return path.with_name(f"{path.stem}_boundary{path.suffix}")


class MetricMosaic:
    """Thread-safe output raster for one scale and status.

    Args:
        shape: ``(rows, cols)`` of the output grid.
        transform: Affine transform of the output grid.
        crs: CRS of the output grid, or ``None``.
        scale_label: Scale token written to the raster tags.
        status: ``"observed"`` or ``"calibrated"``.
        boundary_policy: ``"exclude"`` drops partial windows, ``"flag"``
                         writes them and records them in
                         :attr:`boundary_mask`.
        metric_names: Band order.
        tags: Extra GeoTIFF tags, such as the window geometry from
              :meth:`SublandscapePartitioner.geometry_tags`.
    """

    def __init__(
        self,
        shape: tuple[int, int],
        transform: Affine,
        crs: CRS | None = None,
        *,
        scale_label: str = "",
        status: OutputStatus = "observed",
        boundary_policy: BoundaryPolicy = "flag",
        metric_names: Sequence[str] = METRIC_NAMES,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        if boundary_policy not in ("exclude", "flag"):
            raise ValueError(f"boundary_policy must be 'exclude' or 'flag', got {boundary_policy!r}")
        self.shape = (int(shape[0]), int(shape[1]))
        self.transform = transform
        self.crs = crs
        self.scale_label = scale_label
        self.status = status
        self.boundary_policy = boundary_policy
        self.metric_names = tuple(metric_names)
        self.tags = dict(tags or {})

        self._data = np.full((len(self.metric_names), *self.shape), NODATA_VALUE, dtype=np.float32)
        self._written = np.zeros(self.shape, dtype=bool)
        self.boundary_mask = np.zeros(self.shape, dtype=bool)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, window: AnalysisWindow, vector: MetricVector) -> bool:
        """Write *vector* to the output cell of *window*.

        Returns:
            ``True`` if the cell was written, ``False`` if the window was
            dropped by the ``exclude`` boundary policy.

        Raises:
            RasterError: If the cell lies outside the grid or was already
                written.
        """
        if window.is_partial and self.boundary_policy == "exclude":
            logger.debug("Skipping partial window %s", window.window_id)
            return False

        row, col = window.output_cell
        if not (0 <= row < self.shape[0] and 0 <= col < self.shape[1]):
            raise RasterError(f"Output cell ({row}, {col}) is outside the {self.shape} output grid.")

        values = vector.as_array(self.metric_names).astype(np.float32)
        with self._lock:
            if self._written[row, col]:
                raise RasterError(
                    f"Output cell ({row}, {col}) of scale '{self.scale_label}' was already written."
                )
            self._data[:, row, col] = values
            self._written[row, col] = True
            if window.is_partial:
                self.boundary_mask[row, col] = True
        return True

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def cells_written(self) -> int:
        with self._lock:
            return int(self._written.sum())

    @property
    def is_complete(self) -> bool:
        with self._lock:
            return bool(self._written.all())

    def band(self, name: str) -> npt.NDArray[np.float32]:
        """Copy of one metric band."""
        with self._lock:
            return self._data[self.metric_names.index(name)].copy()

    def array(self) -> npt.NDArray[np.float32]:
        """Copy of the full ``(bands, rows, cols)`` array."""
        with self._lock:
            return self._data.copy()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def to_geotiff(self, output_path: Path) -> list[Path]:
        """Write the mosaic as a float32 GeoTIFF, one band per metric.

        With the ``flag`` policy a ``<name>_boundary.tif`` mask is written
        alongside when any boundary window was kept.

        Returns:
            Paths of the files written.

        Raises:
            OutputWriteError: If a file cannot be written.
        """
        output_path = Path(output_path)
        data = self.array()
        profile = {
            "driver": "GTiff",
            "dtype": "float32",
            "count": len(self.metric_names),
            "height": self.shape[0],
            "width": self.shape[1],
            "crs": self.crs,
            "transform": self.transform,
            "nodata": NODATA_VALUE,
            "compress": "lzw",
        }
        written = [output_path]
        try:
            with rasterio.open(output_path, "w", **profile) as dst:
                dst.write(data)
                for index, name in enumerate(self.metric_names, start=1):
                    dst.set_band_description(index, name)
                dst.update_tags(
                    **self.tags,
                    scale=self.scale_label,
                    status=self.status,
                    boundary_policy=self.boundary_policy,
                    undefined_value=str(UNDEFINED_VALUE),
                    uncalibrated_value=str(UNCALIBRATED_VALUE),
                )

            if self.boundary_policy == "flag" and self.boundary_mask.any():
                mask_path = boundary_name(output_path)
                mask_profile = {**profile, "dtype": "uint8", "count": 1, "nodata": None}
                with rasterio.open(mask_path, "w", **mask_profile) as dst:
                    dst.write(self.boundary_mask.astype(np.uint8), 1)
                    dst.set_band_description(1, "boundary")
                written.append(mask_path)
        except (OSError, rasterio.errors.RasterioIOError) as exc:
            raise OutputWriteError(str(output_path), str(exc)) from exc

        logger.info(
            "Wrote %s (%d/%d cells, %d boundary).",
            output_path.name,
            int(self._written.sum()),
            self._written.size,
            int(self.boundary_mask.sum()),
        )
        return written


@dataclass(frozen=True)
class LSMRaster:
    """An output raster read back from disk."""

    data: npt.NDArray[np.float32]
    metric_names: tuple[str, ...]
    tags: dict[str, str]
    transform: Affine

    def band(self, name: str) -> npt.NDArray[np.float32]:
        return self.data[self.metric_names.index(name)]


def read_lsm_raster(path: Path) -> LSMRaster:
    """Read an output raster written by :meth:`MetricMosaic.to_geotiff`.

    Raises:
        RasterError: If rasterio cannot read the file.
    """
    try:
        with rasterio.open(path) as src:
            return LSMRaster(
                data=src.read().astype(np.float32),
                metric_names=tuple(src.descriptions),
                tags=dict(src.tags()),
                transform=src.transform,
            )
    except rasterio.errors.RasterioIOError as exc:
        raise RasterError(f"Could not open raster '{path}': {exc}") from exc
