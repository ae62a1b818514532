from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from .errors import GeometryError, NonUniformSpacingError, UnsupportedOrientationError
from .model import GridFrame

logger = logging.getLogger(__name__)

# Direction-cosine pairs (row direction, column direction) per patient position
ORIENTATION_COSINES: Dict[str, Tuple[float, ...]] = {
    "HFS": (1.0, 0.0, 0.0, 0.0, 1.0, 0.0),
    "HFP": (-1.0, 0.0, 0.0, 0.0, -1.0, 0.0),
    "FFS": (-1.0, 0.0, 0.0, 0.0, 1.0, 0.0),
    "FFP": (1.0, 0.0, 0.0, 0.0, -1.0, 0.0),
}

ORIENTATION_SIGNS: Dict[str, Tuple[int, int, int]] = {
    "HFS": (1, 1, 1),
    "HFP": (-1, -1, 1),
    "FFS": (-1, 1, -1),
    "FFP": (1, -1, -1),
}

DEFAULT_SPACING_TOLERANCE = 0.01


@dataclass(frozen=True)
class SliceGeometry:
    """Geometric header fields of one image slice or dose grid (DICOM units, mm)."""

    image_position: Tuple[float, float, float]
    image_orientation: Tuple[float, ...]
    pixel_spacing: Tuple[float, float]
    rows: int
    columns: int
    frame_offsets: Optional[Tuple[float, ...]] = None
    slice_thickness: Optional[float] = None
    frame_of_reference_uid: Optional[str] = None


def classify_orientation(cosines: Sequence[float], atol: float = 1e-4) -> str:
    """Return the patient position code (HFS/HFP/FFS/FFP) for an ImageOrientationPatient pair."""
    values = np.asarray(cosines, dtype=float).reshape(-1)
    if values.size == 6:
        for code, reference in ORIENTATION_COSINES.items():
            if np.allclose(values, reference, rtol=0.0, atol=atol):
                return code
    raise UnsupportedOrientationError(
        f"Unsupported image orientation {tuple(values.tolist())}; "
        "only HFS, HFP, FFS and FFP axial orientations are supported"
    )


def orientation_signs(position: str) -> np.ndarray:
    try:
        return np.asarray(ORIENTATION_SIGNS[str(position).upper()], dtype=float)
    except KeyError:
        raise UnsupportedOrientationError(f"Unknown patient position {position!r}") from None


def to_canonical(points_mm, position: str) -> np.ndarray:
    """Convert (N, 3) DICOM patient coordinates in mm into canonical cm coordinates."""
    points = np.asarray(points_mm, dtype=float).reshape(-1, 3)
    return points / 10.0 * orientation_signs(position)


def uniform_pitch(positions: Sequence[float], tolerance: float = DEFAULT_SPACING_TOLERANCE) -> float:
    """Mean spacing of a set of positions, rejecting grids whose spacing varies by more than ``tolerance``.

    Positions are sorted before differencing, so ascending and descending
    inputs give the same pitch.
    """
    values = np.sort(np.asarray(positions, dtype=float).reshape(-1))
    if values.size < 2:
        raise NonUniformSpacingError("At least two positions are required to derive a voxel pitch")
    widths = np.diff(values)
    mean = float(widths.mean())
    if not mean > 0:
        raise NonUniformSpacingError("Positions collapse onto a single plane; voxel pitch is undefined")
    deviation = float(widths.max() - widths.min()) / mean
    if deviation > tolerance:
        raise NonUniformSpacingError(
            f"Positions differ by {deviation:.2%} (limit {tolerance:.2%}), suggesting variable "
            "grid spacing. This is not supported."
        )
    return mean


def axis_from_positions(
    positions: Sequence[float],
    tolerance: float = DEFAULT_SPACING_TOLERANCE,
) -> Tuple[float, float, np.ndarray]:
    """Voxel-center positions to (start, width, ascending order)."""
    values = np.asarray(positions, dtype=float).reshape(-1)
    width = uniform_pitch(values, tolerance)
    order = np.argsort(values, kind="stable")
    return float(values[order[0]]), width, order


def axis_from_boundaries(
    boundaries: Sequence[float],
    tolerance: float = DEFAULT_SPACING_TOLERANCE,
) -> Tuple[float, float, int]:
    """N+1 voxel boundaries to (start of first voxel center, width, N)."""
    values = np.asarray(boundaries, dtype=float).reshape(-1)
    width = uniform_pitch(values, tolerance)
    return float(values.min()) + width / 2.0, width, int(values.size - 1)


def _in_plane_frame(
    geometry: SliceGeometry,
    signs: np.ndarray,
    start_z: float,
    width_z: float,
    slices: int,
) -> GridFrame:
    # Column index runs along the row cosine (X), row index along the column cosine (Y)
    start_x = signs[0] * float(geometry.image_position[0]) / 10.0
    start_y = signs[1] * float(geometry.image_position[1]) / 10.0
    width_x = float(geometry.pixel_spacing[1]) / 10.0
    width_y = float(geometry.pixel_spacing[0]) / 10.0
    return GridFrame(
        start=(start_x, start_y, start_z),
        width=(width_x, width_y, width_z),
        dimensions=(int(geometry.columns), int(geometry.rows), int(slices)),
    )


def _single_slice_axis(position_z: float, geometry: SliceGeometry) -> Tuple[float, float, np.ndarray]:
    thickness = geometry.slice_thickness
    if thickness is None or not float(thickness) > 0:
        raise NonUniformSpacingError("Single-slice grid without SliceThickness; voxel pitch is undefined")
    return float(position_z), float(thickness) / 10.0, np.array([0])


def image_frame(
    geometries: Sequence[SliceGeometry],
    tolerance: float = DEFAULT_SPACING_TOLERANCE,
) -> Tuple[GridFrame, str, np.ndarray]:
    """Canonical frame of a CT/MR slice series.

    Returns the grid, the patient position code and the slice order that
    arranges the inputs along ascending canonical Z.
    """
    if not geometries:
        raise GeometryError("No image slices were provided")
    first = geometries[0]
    position = classify_orientation(first.image_orientation)
    for geometry in geometries[1:]:
        if classify_orientation(geometry.image_orientation) != position:
            raise GeometryError("Image slices do not share one patient orientation")
        if (geometry.rows, geometry.columns) != (first.rows, first.columns):
            raise GeometryError("Image slices do not share one matrix size")
    signs = orientation_signs(position)
    z = signs[2] * np.array([float(g.image_position[2]) for g in geometries]) / 10.0
    if len(geometries) == 1:
        start_z, width_z, order = _single_slice_axis(z[0], first)
    else:
        start_z, width_z, order = axis_from_positions(z, tolerance)
    logger.info("Patient position identified as %s", position)
    logger.debug("IEC-Z resolution computed as %g cm over %d slices", width_z, len(geometries))
    frame = _in_plane_frame(geometries[int(order[0])], signs, start_z, width_z, len(geometries))
    return frame, position, order


def dose_positions(geometry: SliceGeometry) -> np.ndarray:
    """Absolute DICOM Z (mm) of each dose frame from ImagePositionPatient and GridFrameOffsetVector."""
    base_z = float(geometry.image_position[2])
    offsets = np.asarray(geometry.frame_offsets or (0.0,), dtype=float).reshape(-1)
    # Offsets are relative when the first one is zero; otherwise they may already be absolute
    if offsets[0] != 0.0 and np.isclose(offsets[0], base_z, atol=1e-3):
        return offsets
    return base_z + offsets


def dose_frame(
    geometry: SliceGeometry,
    tolerance: float = DEFAULT_SPACING_TOLERANCE,
) -> Tuple[GridFrame, str, np.ndarray]:
    """Canonical frame of a multi-frame dose grid (orientation defaults to HFS)."""
    cosines = geometry.image_orientation or ORIENTATION_COSINES["HFS"]
    position = classify_orientation(cosines)
    signs = orientation_signs(position)
    z = signs[2] * dose_positions(geometry) / 10.0
    if z.size == 1:
        start_z, width_z, order = _single_slice_axis(z[0], geometry)
    else:
        start_z, width_z, order = axis_from_positions(z, tolerance)
    logger.debug("Dose IEC-Z resolution computed as %g cm over %d frames", width_z, z.size)
    return _in_plane_frame(geometry, signs, start_z, width_z, z.size), position, order


__all__ = [
    "ORIENTATION_COSINES",
    "ORIENTATION_SIGNS",
    "SliceGeometry",
    "classify_orientation",
    "orientation_signs",
    "to_canonical",
    "uniform_pitch",
    "axis_from_positions",
    "axis_from_boundaries",
    "image_frame",
    "dose_positions",
    "dose_frame",
]
