from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Sequence, Union

import numpy as np
import SimpleITK as sitk

from .geometry import orientation_signs
from .model import GridFrame, Structure, Volume
from .utils import ensure_dir

logger = logging.getLogger(__name__)


def _array_to_image(arr: np.ndarray, frame: GridFrame, position: str) -> sitk.Image:
    """Wrap an ``[x, y, z]`` array as a SimpleITK image placed in DICOM patient coordinates (mm)."""
    signs = orientation_signs(position)
    zyx = np.transpose(np.asarray(arr), (2, 1, 0))
    img = sitk.GetImageFromArray(np.ascontiguousarray(zyx))
    img.SetSpacing(tuple(float(w) * 10.0 for w in frame.width))
    img.SetOrigin(tuple(float(s * v) * 10.0 for s, v in zip(signs, frame.start)))
    img.SetDirection(tuple(float(v) for v in np.diag(signs).reshape(-1)))
    return img


def volume_to_image(volume: Volume) -> sitk.Image:
    return _array_to_image(volume.data, volume.frame, volume.position)


def write_volume(volume: Volume, path: Union[str, Path]) -> Path:
    path = Path(path)
    ensure_dir(path.parent)
    sitk.WriteImage(volume_to_image(volume), str(path))
    logger.info("Wrote %s volume to %s", volume.modality or "image", path)
    return path


def _safe_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("_")
    return cleaned or "structure"


def write_structure_mask(structure: Structure, path: Union[str, Path], position: str = "HFS") -> Path:
    path = Path(path)
    ensure_dir(path.parent)
    img = _array_to_image(structure.mask.astype(np.uint8), structure.frame, position)
    sitk.WriteImage(img, str(path), True)
    logger.debug("Wrote mask for %s to %s", structure.name, path)
    return path


def write_structure_masks(
    structures: Sequence[Structure],
    directory: Union[str, Path],
    position: str = "HFS",
    suffix: str = ".nii.gz",
) -> List[Path]:
    directory = Path(directory)
    ensure_dir(directory)
    written: List[Path] = []
    used: set[str] = set()
    for structure in structures:
        base = _safe_name(structure.name)
        name = base
        n = 1
        while name in used:
            n += 1
            name = f"{base}_{n}"
        used.add(name)
        written.append(write_structure_mask(structure, directory / f"{name}{suffix}", position))
    logger.info("Exported %d structure masks to %s", len(written), directory)
    return written


__all__ = ["volume_to_image", "write_volume", "write_structure_mask", "write_structure_masks"]
