from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .errors import GeometryError

Vector3 = Tuple[float, float, float]
Shape3 = Tuple[int, int, int]


def _vector3(values, label: str) -> Vector3:
    arr = np.asarray(values, dtype=float).reshape(-1)
    if arr.size != 3:
        raise GeometryError(f"{label} must have 3 components, got {arr.size}")
    return (float(arr[0]), float(arr[1]), float(arr[2]))


@dataclass(frozen=True)
class GridFrame:
    """Canonical grid geometry: voxel-center start, pitch and voxel counts (cm, IEC axes X,Y,Z)."""

    start: Vector3
    width: Vector3
    dimensions: Shape3

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _vector3(self.start, "start"))
        object.__setattr__(self, "width", _vector3(self.width, "width"))
        dims = tuple(int(d) for d in self.dimensions)
        if len(dims) != 3 or any(d <= 0 for d in dims):
            raise GeometryError(f"dimensions must be 3 positive integers, got {self.dimensions}")
        if any(not np.isfinite(w) or w <= 0 for w in self.width):
            raise GeometryError(f"voxel width must be strictly positive, got {self.width}")
        object.__setattr__(self, "dimensions", dims)

    @property
    def voxel_volume(self) -> float:
        return float(self.width[0] * self.width[1] * self.width[2])

    def coordinates(self, axis: int) -> np.ndarray:
        return self.start[axis] + np.arange(self.dimensions[axis], dtype=float) * self.width[axis]

    def extent(self, axis: int) -> Tuple[float, float]:
        return self.start[axis], self.start[axis] + (self.dimensions[axis] - 1) * self.width[axis]

    def matches(self, other: "GridFrame", atol: float = 1e-6) -> bool:
        return (
            self.dimensions == other.dimensions
            and np.allclose(self.start, other.start, rtol=0.0, atol=atol)
            and np.allclose(self.width, other.width, rtol=0.0, atol=atol)
        )


@dataclass(eq=False)
class Volume:
    """Dense voxel data on a canonical grid, indexed ``data[x, y, z]``."""

    data: np.ndarray
    start: Vector3
    width: Vector3
    frame_of_reference_uid: Optional[str] = None
    position: str = "HFS"
    modality: Optional[str] = None
    uncertainty: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        if self.data.ndim != 3:
            raise GeometryError(f"volume data must be 3D, got shape {self.data.shape}")
        # Validates start/width and caches the canonical triple
        self._frame = GridFrame(self.start, self.width, self.data.shape)
        self.start = self._frame.start
        self.width = self._frame.width
        if self.uncertainty is not None and np.shape(self.uncertainty) != self.data.shape:
            raise GeometryError("uncertainty array must match the dose array shape")

    @property
    def dimensions(self) -> Shape3:
        return self._frame.dimensions

    @property
    def frame(self) -> GridFrame:
        return self._frame

    @property
    def voxel_volume(self) -> float:
        return self._frame.voxel_volume

    def with_data(self, data: np.ndarray, frame: Optional[GridFrame] = None) -> "Volume":
        frame = frame or self._frame
        return Volume(
            data=data,
            start=frame.start,
            width=frame.width,
            frame_of_reference_uid=self.frame_of_reference_uid,
            position=self.position,
            modality=self.modality,
        )


@dataclass(frozen=True, eq=False)
class Structure:
    """Rasterized ROI. Holds a copy of its reference grid, not the Volume itself."""

    name: str
    mask: np.ndarray
    start: Vector3
    width: Vector3
    dimensions: Shape3
    color: Tuple[int, int, int] = (0, 0, 0)
    points: Tuple[np.ndarray, ...] = field(default_factory=tuple)
    frame_of_reference_uid: Optional[str] = None
    number: Optional[int] = None

    def __post_init__(self) -> None:
        frame = GridFrame(self.start, self.width, self.dimensions)
        mask = np.array(self.mask, dtype=bool, copy=True)
        if mask.shape != frame.dimensions:
            raise GeometryError(
                f"mask shape {mask.shape} does not match dimensions {frame.dimensions} for {self.name}"
            )
        mask.setflags(write=False)
        points = []
        for curve in self.points:
            arr = np.array(curve, dtype=float, copy=True).reshape(-1, 3)
            arr.setflags(write=False)
            points.append(arr)
        object.__setattr__(self, "mask", mask)
        object.__setattr__(self, "start", frame.start)
        object.__setattr__(self, "width", frame.width)
        object.__setattr__(self, "dimensions", frame.dimensions)
        object.__setattr__(self, "points", tuple(points))
        object.__setattr__(self, "color", tuple(int(c) for c in self.color))

    @property
    def frame(self) -> GridFrame:
        return GridFrame(self.start, self.width, self.dimensions)

    @property
    def voxel_count(self) -> int:
        return int(np.count_nonzero(self.mask))

    @property
    def volume_cc(self) -> float:
        return self.voxel_count * float(self.width[0] * self.width[1] * self.width[2])


__all__ = ["GridFrame", "Volume", "Structure"]
