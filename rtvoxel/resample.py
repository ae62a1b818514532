from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np

from .interpolation import CPUBackend, InterpolationBackend, get_backend
from .model import GridFrame, Volume

logger = logging.getLogger(__name__)

EDGE_SNAP = 1e-6


def fractional_indices(source: GridFrame, target: GridFrame, axis: int) -> np.ndarray:
    """Target voxel centers along one axis expressed as fractional source indices."""
    idx = (target.coordinates(axis) - source.start[axis]) / source.width[axis]
    last = source.dimensions[axis] - 1
    # Samples on the source boundary must not fall out through rounding
    idx[np.abs(idx) < EDGE_SNAP] = 0.0
    idx[np.abs(idx - last) < EDGE_SNAP] = float(last)
    return idx


class VolumeResampler:
    """Trilinear resampling of a Volume onto another canonical grid.

    The accelerated backend is tried first; any failure there is logged and
    the same mesh is evaluated on the CPU.
    """

    def __init__(self, backend: Optional[InterpolationBackend] = None, use_gpu: bool = False):
        self.backend = backend if backend is not None else get_backend(use_gpu)
        self._fallback = CPUBackend()

    def _sample(self, data: np.ndarray, coords: np.ndarray) -> np.ndarray:
        if isinstance(self.backend, CPUBackend):
            return self._fallback.trilinear(data, coords)
        try:
            return self.backend.trilinear(data, coords)
        except Exception as exc:
            logger.warning("%s resampling failed (%s); falling back to CPU", self.backend.name, exc)
            return self._fallback.trilinear(data, coords)

    def resample(self, source: Volume, target: GridFrame) -> Volume:
        if source.frame.matches(target):
            logger.debug("Source grid already matches target grid; copying")
            return source.with_data(np.array(source.data, dtype=np.float64, copy=True), target)

        start = time.time()
        axes = [fractional_indices(source.frame, target, axis) for axis in range(3)]
        mesh = np.meshgrid(*axes, indexing="ij")
        coords = np.stack(mesh, axis=0)
        data = self._sample(source.data, coords)
        data = np.asarray(data, dtype=np.float64).reshape(target.dimensions)
        logger.info(
            "Resampled %s grid onto %s in %.2f s",
            "x".join(str(d) for d in source.dimensions),
            "x".join(str(d) for d in target.dimensions),
            time.time() - start,
        )
        return source.with_data(data, target)


def resample(source: Volume, target: GridFrame, use_gpu: bool = False) -> Volume:
    return VolumeResampler(use_gpu=use_gpu).resample(source, target)


__all__ = ["VolumeResampler", "fractional_indices", "resample"]
