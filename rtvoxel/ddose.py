"""DOSXYZnrc ``.3ddose`` reader.

File layout (whitespace separated): voxel counts along X, Y, Z; then the N+1
voxel boundaries of each axis in cm; then the dose array and its relative
uncertainty array, both with X varying fastest.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import numpy as np
from pydicom.uid import generate_uid

from .errors import CodecError
from .geometry import DEFAULT_SPACING_TOLERANCE, axis_from_boundaries
from .model import Volume
from .scan import ScanRecord

logger = logging.getLogger(__name__)


def read_3ddose(path: Union[str, Path], tolerance: float = DEFAULT_SPACING_TOLERANCE) -> Volume:
    path = Path(path)
    logger.info("Loading dose file %s", path.name)
    try:
        with path.open("r") as fh:
            values = np.array(fh.read().split(), dtype=float)
    except (OSError, ValueError) as exc:
        raise CodecError(f"Cannot read 3ddose file {path}: {exc}") from exc

    if values.size < 3:
        raise CodecError(f"{path} is missing the grid dimensions")
    dims = tuple(int(v) for v in values[:3])
    if any(d <= 0 for d in dims):
        raise CodecError(f"{path} has invalid grid dimensions {dims}")
    pos = 3

    start, width = [], []
    for axis, n in enumerate(dims):
        boundaries = values[pos:pos + n + 1]
        if boundaries.size != n + 1:
            raise CodecError(f"{path} is truncated in the boundaries of axis {axis}")
        pos += n + 1
        s, w, _ = axis_from_boundaries(boundaries, tolerance)
        start.append(s)
        width.append(w)

    count = int(np.prod(dims))
    dose = values[pos:pos + count]
    if dose.size != count:
        raise CodecError(f"{path} is truncated in the dose array")
    pos += count
    error = values[pos:pos + count]
    uncertainty = None
    if error.size == count:
        uncertainty = error.reshape(dims, order="F")
    elif error.size:
        logger.warning("%s has an incomplete uncertainty array; ignoring it", path.name)

    logger.debug("Dose grid %s with pitch %s cm", "x".join(str(d) for d in dims), width)
    return Volume(
        data=dose.reshape(dims, order="F"),
        start=tuple(start),
        width=tuple(width),
        modality="RTDOSE",
        uncertainty=uncertainty,
    )


def ddose_record(path: Union[str, Path]) -> ScanRecord:
    """Scan record for a 3ddose file; the UID is derived from the path so rescans agree."""
    path = Path(path)
    return ScanRecord(
        path=str(path),
        modality="RTDOSE",
        sop_instance_uid=str(generate_uid(entropy_srcs=[str(path.resolve())])),
    )


__all__ = ["read_3ddose", "ddose_record"]
