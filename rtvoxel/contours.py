from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from .atlas import AtlasRule, should_load
from .model import GridFrame, Structure, Volume

logger = logging.getLogger(__name__)


@dataclass
class ContourSet:
    """Raw contour curves of one ROI in canonical cm coordinates."""

    name: str
    curves: List[np.ndarray] = field(default_factory=list)
    number: Optional[int] = None
    color: Tuple[int, int, int] = (0, 0, 0)
    frame_of_reference_uid: Optional[str] = None


def polygon_mask(x_centers: np.ndarray, y_centers: np.ndarray, polygon) -> np.ndarray:
    """Even-odd point-in-polygon test of every (x, y) voxel center; returns a ``[x, y]`` bool grid.

    Only centers inside the polygon's bounding box are evaluated.
    """
    x_centers = np.asarray(x_centers, dtype=float)
    y_centers = np.asarray(y_centers, dtype=float)
    mask = np.zeros((x_centers.size, y_centers.size), dtype=bool)
    poly = np.asarray(polygon, dtype=float)
    if poly.ndim != 2 or poly.shape[0] < 3:
        return mask
    poly = poly[:, :2]

    lo = poly.min(axis=0)
    hi = poly.max(axis=0)
    ix = np.nonzero((x_centers >= lo[0]) & (x_centers <= hi[0]))[0]
    iy = np.nonzero((y_centers >= lo[1]) & (y_centers <= hi[1]))[0]
    if ix.size == 0 or iy.size == 0:
        return mask

    px = x_centers[ix][:, None]
    py = y_centers[iy][None, :]
    inside = np.zeros((ix.size, iy.size), dtype=bool)
    xj, yj = poly[-1]
    for xi, yi in poly:
        # Horizontal edges never cross a scanline
        if yi != yj:
            crosses = (yi > py) != (yj > py)
            x_cross = (xj - xi) * (py - yi) / (yj - yi) + xi
            inside ^= crosses & (px < x_cross)
        xj, yj = xi, yi

    mask[ix[0]:ix[-1] + 1, iy[0]:iy[-1] + 1] = inside
    return mask


class ContourRasterizer:
    """Turns ContourSets into Structures on a fixed reference grid.

    Curves on the same slice are merged with XOR, so a curve nested inside
    another punches a hole in it.
    """

    def __init__(
        self,
        reference: Union[Volume, GridFrame],
        frame_of_reference_uid: Optional[str] = None,
        ignore_frame_of_reference: bool = False,
        atlas: Optional[Sequence[AtlasRule]] = None,
    ):
        if isinstance(reference, Volume):
            self.frame = reference.frame
            if frame_of_reference_uid is None:
                frame_of_reference_uid = reference.frame_of_reference_uid
        else:
            self.frame = reference
        self.frame_of_reference_uid = frame_of_reference_uid
        self.ignore_frame_of_reference = ignore_frame_of_reference
        self.atlas = list(atlas or [])
        self._x = self.frame.coordinates(0)
        self._y = self.frame.coordinates(1)

    def slice_index(self, z: float) -> Optional[int]:
        """Nearest slice to canonical ``z``, or None when it falls outside the grid."""
        idx = int(np.floor((z - self.frame.start[2]) / self.frame.width[2] + 0.5))
        if idx < 0 or idx > self.frame.dimensions[2] - 1:
            return None
        return idx

    def _frame_matches(self, contour_set: ContourSet) -> bool:
        if self.ignore_frame_of_reference:
            return True
        if contour_set.frame_of_reference_uid == self.frame_of_reference_uid:
            return True
        logger.warning(
            "Structure %s frame of reference did not match the image and will not be loaded",
            contour_set.name,
        )
        return False

    def rasterize(self, contour_set: ContourSet) -> Optional[Structure]:
        if not self._frame_matches(contour_set):
            return None

        mask = np.zeros(self.frame.dimensions, dtype=bool)
        points = []
        for curve in contour_set.curves:
            curve = np.asarray(curve, dtype=float).reshape(-1, 3)
            if curve.shape[0] == 0:
                logger.warning("Structure %s contains an empty contour", contour_set.name)
                continue
            points.append(curve)
            k = self.slice_index(curve[0, 2])
            if k is None:
                logger.warning(
                    "Structure %s contains contours outside of image array (z=%g cm)",
                    contour_set.name,
                    curve[0, 2],
                )
                continue
            mask[:, :, k] ^= polygon_mask(self._x, self._y, curve)

        if not mask.any():
            logger.warning("Structure %s is empty and will not be loaded", contour_set.name)
            return None

        structure = Structure(
            name=contour_set.name,
            mask=mask,
            start=self.frame.start,
            width=self.frame.width,
            dimensions=self.frame.dimensions,
            color=contour_set.color,
            points=tuple(points),
            frame_of_reference_uid=contour_set.frame_of_reference_uid,
            number=contour_set.number,
        )
        logger.debug(
            "Structure %s loaded with %d curves, volume %.2f cc",
            structure.name,
            len(points),
            structure.volume_cc,
        )
        return structure

    def rasterize_all(self, contour_sets: Sequence[ContourSet]) -> List[Structure]:
        structures: List[Structure] = []
        for contour_set in contour_sets:
            if not should_load(contour_set.name, self.atlas):
                continue
            structure = self.rasterize(contour_set)
            if structure is not None:
                structures.append(structure)
        logger.info("Rasterized %d of %d structures", len(structures), len(contour_sets))
        return structures


__all__ = ["ContourSet", "ContourRasterizer", "polygon_mask"]
