"""Trilinear sampling backends.

The resampler evaluates a source array at fractional voxel indices. The CPU
backend uses SciPy; the GPU backend runs the same call through CuPy when it
is installed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import numpy as np
from scipy.ndimage import map_coordinates

try:
    import cupy as cp
    import cupyx.scipy.ndimage as cupy_ndimage
    HAS_CUPY = True
except ImportError:
    HAS_CUPY = False
    cp = None
    cupy_ndimage = None

logger = logging.getLogger(__name__)


class InterpolationBackend(ABC):
    """Samples a 3D array at fractional index coordinates, 0 outside ``[0, n-1]``."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name for logging."""

    @abstractmethod
    def trilinear(self, data: np.ndarray, coordinates: np.ndarray) -> np.ndarray:
        """
        Args:
            data: 3D source array indexed ``[x, y, z]``
            coordinates: ``(3, ...)`` array of fractional indices

        Returns:
            float64 samples with the trailing shape of ``coordinates``
        """


class CPUBackend(InterpolationBackend):
    @property
    def name(self) -> str:
        return "CPU (SciPy)"

    def trilinear(self, data: np.ndarray, coordinates: np.ndarray) -> np.ndarray:
        return map_coordinates(
            np.asarray(data, dtype=np.float64),
            np.asarray(coordinates, dtype=np.float64),
            order=1,
            mode="constant",
            cval=0.0,
            prefilter=False,
        )


class GPUBackend(InterpolationBackend):
    def __init__(self) -> None:
        if not HAS_CUPY:
            raise ImportError(
                "CuPy is required for GPU resampling. "
                "Install with: pip install 'rtvoxel[gpu]' (or the cupy build matching your CUDA)"
            )
        logger.info("GPU interpolation backend initialized (CuPy)")

    @property
    def name(self) -> str:
        return "GPU (CuPy)"

    def trilinear(self, data: np.ndarray, coordinates: np.ndarray) -> np.ndarray:
        data_gpu = cp.asarray(data, dtype=cp.float64)
        coords_gpu = cp.asarray(coordinates, dtype=cp.float64)
        result = cupy_ndimage.map_coordinates(
            data_gpu,
            coords_gpu,
            order=1,
            mode="constant",
            cval=0.0,
            prefilter=False,
        )
        return cp.asnumpy(result)


def get_backend(use_gpu: bool = False) -> InterpolationBackend:
    """GPU backend when requested and CuPy is importable, else CPU."""
    if use_gpu and HAS_CUPY:
        return GPUBackend()
    if use_gpu:
        logger.warning("GPU resampling requested but CuPy is not installed; using CPU")
    return CPUBackend()


__all__ = [
    "InterpolationBackend",
    "CPUBackend",
    "GPUBackend",
    "HAS_CUPY",
    "get_backend",
]
