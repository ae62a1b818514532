# rtvoxel package initialization

__version__ = "0.1.0"

__all__ = [
    "atlas",
    "config",
    "contours",
    "ddose",
    "dicom",
    "dvh",
    "errors",
    "export",
    "geometry",
    "interpolation",
    "model",
    "resample",
    "scan",
    "study",
    "utils",
]
