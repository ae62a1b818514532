from __future__ import annotations


class RTVoxelError(Exception):
    """Base class for fatal conditions that abort a load or compute call."""


class GeometryError(RTVoxelError, ValueError):
    """A grid cannot be represented in the canonical (start, width, dimensions) model."""


class NonUniformSpacingError(GeometryError):
    """Voxel pitch varies by more than the allowed tolerance across a grid."""


class UnsupportedOrientationError(GeometryError):
    """Direction cosines do not match HFS, HFP, FFS or FFP."""


class EmptyDoseError(RTVoxelError, ValueError):
    """The dose array has no positive maximum."""


class CodecError(RTVoxelError, RuntimeError):
    """A DICOM object could not be read or lacks a required attribute."""


__all__ = [
    "RTVoxelError",
    "GeometryError",
    "NonUniformSpacingError",
    "UnsupportedOrientationError",
    "EmptyDoseError",
    "CodecError",
]
