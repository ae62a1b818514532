from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .config import VoxelConfig
from .ddose import read_3ddose
from .dicom import load_dose_volume, load_image_volume, load_structures
from .dvh import DVHResult, compute_dvh
from .errors import CodecError
from .export import write_structure_masks
from .model import Structure, Volume
from .resample import VolumeResampler
from .scan import IMAGE_MODALITIES
from .utils import get, list_files, read_dicom

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class StudyResult:
    image: Volume
    dose: Volume
    structures: List[Structure]
    dvh: DVHResult


def read_image_series(image_paths: Union[PathLike, Sequence[PathLike]]):
    """Read the CT/MR image files from a directory or list of files; other objects and unreadable files are skipped."""
    if isinstance(image_paths, (str, Path)):
        files = list_files(Path(image_paths))
    else:
        files = [Path(p) for p in image_paths]
    datasets = []
    for path in files:
        ds = read_dicom(path)
        if ds is None or "PixelData" not in ds:
            logger.warning("File %s is not a valid DICOM image and was skipped", path.name)
            continue
        modality = str(get(ds, "Modality", "") or "").strip()
        if modality not in IMAGE_MODALITIES:
            logger.warning("File %s has modality %s, not an image series, and was skipped", path.name, modality or "<none>")
            continue
        datasets.append(ds)
    logger.info("Read %d image files from %d candidates", len(datasets), len(files))
    return datasets


def load_dose(path: PathLike, tolerance: float) -> Volume:
    path = Path(path)
    if path.suffix.lower() == ".3ddose":
        return read_3ddose(path, tolerance)
    ds = read_dicom(path)
    if ds is None:
        raise CodecError(f"File {path} is not a valid DICOM object")
    return load_dose_volume(ds, tolerance)


def dvh_for_study(
    image_paths: Union[PathLike, Sequence[PathLike]],
    rtstruct_path: PathLike,
    rtdose_path: PathLike,
    config: Optional[VoxelConfig] = None,
) -> StudyResult:
    """Load images, structures and dose, then compute the DVH on the image grid."""
    cfg = config or VoxelConfig()
    image = load_image_volume(read_image_series(image_paths), cfg.spacing_tolerance)

    rtstruct = read_dicom(rtstruct_path)
    if rtstruct is None:
        raise CodecError(f"File {rtstruct_path} is not a valid DICOM object")
    structures = load_structures(
        rtstruct,
        image,
        atlas=cfg.atlas,
        ignore_frame_of_reference=cfg.ignore_frame_of_reference,
    )

    dose = load_dose(rtdose_path, cfg.spacing_tolerance)
    resampler = VolumeResampler(use_gpu=cfg.use_gpu)
    result = compute_dvh(dose, structures, nbins=cfg.nbins, resampler=resampler)

    if cfg.export_masks:
        write_structure_masks(structures, cfg.export_masks, position=image.position)
    return StudyResult(image=image, dose=dose, structures=structures, dvh=result)


__all__ = ["StudyResult", "dvh_for_study", "read_image_series", "load_dose"]
