"""
patches.py
==========
Patch delineation: maximal connected same-class regions in a window.

Patches are labelled per class with :func:`scipy.ndimage.label` using either
the rook (4-cell) or the queen (8-cell) neighbourhood.  Everything a metric
needs from a patch (area, perimeter, core area, centroid, radius of gyration)
is measured once here so the metric engine only works with plain numbers and
label arrays.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

import numpy as np
import numpy.typing as npt
from scipy import ndimage

from .raster import VALID_CLASSES, valid_mask

Connectivity = Literal[4, 8]

NEIGHBOURHOOD: dict[int, npt.NDArray[np.bool_]] = {
    4: ndimage.generate_binary_structure(2, 1),  # rook
    8: ndimage.generate_binary_structure(2, 2),  # queen
}


@dataclass(frozen=True)
class Patch:
    """One connected component of a single class.

    Areas are in square metres and lengths in metres; ``centroid`` and
    ``bbox`` are in window cell coordinates.
    """

    class_value: int
    label: int
    cell_count: int
    area: float
    perimeter: float
    core_area: float
    centroid: tuple[float, float]
    gyration: float
    bbox: tuple[slice, slice] = field(repr=False)

    def perimeter_cells(self, cell_size: float) -> float:
        """Perimeter expressed in cell-edge units."""
        return self.perimeter / cell_size


@dataclass(frozen=True)
class PatchSet:
    """All patches of a window under one connectivity rule.

    Attributes:
        patches: Patches of every delineated class, ordered by class then label.
        labels: Per-class label arrays (0 = not part of that class).
        connectivity: The neighbourhood rule used (4 or 8).
        cell_size: Cell size in metres.
        valid_cells: Number of cells carrying a recognised class code.
    """

    patches: tuple[Patch, ...]
    labels: dict[int, npt.NDArray[np.int32]]
    connectivity: int
    cell_size: float
    valid_cells: int

    @property
    def is_empty(self) -> bool:
        return not self.patches

    @property
    def window_area(self) -> float:
        """Area of the valid part of the window in square metres."""
        return self.valid_cells * self.cell_size * self.cell_size

    def of_class(self, class_value: int | None) -> list[Patch]:
        """Patches of one class, or of every class when *class_value* is ``None``."""
        if class_value is None:
            return list(self.patches)
        return [p for p in self.patches if p.class_value == class_value]

    def __len__(self) -> int:
        return len(self.patches)


def _core_mask(
    class_mask: npt.NDArray[np.bool_],
    edge_depth: int,
    boundary_is_edge: bool,
) -> npt.NDArray[np.bool_]:
    # Core is always eroded with the rook kernel, whatever the patch rule.
    # Cells within edge_depth rook steps of a class cell are connected to it,
    # so eroding the class mask once is the same as eroding every patch.
    if edge_depth < 1:
        # scipy treats iterations < 1 as "erode until nothing changes"
        return class_mask.copy()
    return ndimage.binary_erosion(
        class_mask,
        structure=NEIGHBOURHOOD[4],
        iterations=edge_depth,
        border_value=0 if boundary_is_edge else 1,
    )


def _perimeter_cells(patch_mask: npt.NDArray[np.bool_]) -> int:
    padded = np.pad(patch_mask, 1, mode="constant", constant_values=False)
    return int(
        np.count_nonzero(padded[1:, :] != padded[:-1, :])
        + np.count_nonzero(padded[:, 1:] != padded[:, :-1])
    )


def delineate_patches(
    grid: npt.NDArray,
    cell_size: float,
    connectivity: Connectivity = 4,
    *,
    classes: Iterable[int] | None = None,
    edge_depth: int = 1,
    boundary_is_edge: bool = True,
) -> PatchSet:
    """Label the patches of a class grid.

    Args:
        grid: 2-D array of class codes; unrecognised codes are ignored.
        cell_size: Cell size in metres.
        connectivity: 4 (rook) or 8 (queen) neighbourhood.
        classes: Class codes to delineate.  Defaults to every recognised class.
        edge_depth: Number of cells from a patch edge excluded from its core.
        boundary_is_edge: Whether the window boundary counts as patch edge
            for core area.

    Returns:
        A :class:`PatchSet`; empty (not an error) when the window has no
        valid cells.
    """
    if connectivity not in NEIGHBOURHOOD:
        raise ValueError(f"connectivity must be 4 or 8, got {connectivity!r}")

    grid = np.asarray(grid)
    n_valid = int(valid_mask(grid).sum())
    wanted = VALID_CLASSES if classes is None else tuple(int(c) for c in classes)
    cell_area = cell_size * cell_size

    patches: list[Patch] = []
    labels_by_class: dict[int, npt.NDArray[np.int32]] = {}
    if n_valid == 0:
        return PatchSet((), labels_by_class, connectivity, cell_size, 0)

    for class_value in wanted:
        class_mask = grid == class_value
        if not class_mask.any():
            continue
        label_arr, n_patches = ndimage.label(class_mask, structure=NEIGHBOURHOOD[connectivity])
        label_arr = label_arr.astype(np.int32, copy=False)
        labels_by_class[class_value] = label_arr

        counts = np.bincount(label_arr.ravel(), minlength=n_patches + 1)
        core = _core_mask(class_mask, edge_depth, boundary_is_edge)
        core_counts = np.bincount(label_arr[core], minlength=n_patches + 1)

        for label, patch_slice in enumerate(ndimage.find_objects(label_arr), start=1):
            if patch_slice is None:
                continue
            sub = label_arr[patch_slice] == label
            rows, cols = np.nonzero(sub)
            rows = rows + patch_slice[0].start + 0.5
            cols = cols + patch_slice[1].start + 0.5
            centroid = (float(rows.mean()), float(cols.mean()))
            gyration = float(np.hypot(rows - centroid[0], cols - centroid[1]).mean()) * cell_size

            patches.append(
                Patch(
                    class_value=class_value,
                    label=label,
                    cell_count=int(counts[label]),
                    area=float(counts[label]) * cell_area,
                    perimeter=_perimeter_cells(sub) * cell_size,
                    core_area=float(core_counts[label]) * cell_area,
                    centroid=centroid,
                    gyration=gyration,
                    bbox=patch_slice,
                )
            )

    return PatchSet(tuple(patches), labels_by_class, connectivity, cell_size, n_valid)
