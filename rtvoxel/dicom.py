"""pydicom adapter: typed records, canonical volumes and contour sets from Datasets."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydicom.dataset import Dataset

from .atlas import AtlasRule
from .contours import ContourRasterizer, ContourSet
from .errors import CodecError
from .geometry import (
    DEFAULT_SPACING_TOLERANCE,
    SliceGeometry,
    dose_frame,
    image_frame,
    to_canonical,
)
from .model import Structure, Volume
from .scan import BeamInfo, ScanRecord
from .utils import get

logger = logging.getLogger(__name__)

MVCT_SERIES_DESCRIPTION = "CTrue Image Set"


def _required(ds: Dataset, keyword: str) -> Any:
    value = get(ds, keyword)
    if value is None:
        raise CodecError(f"Required attribute {keyword} is missing")
    return value


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(ds: Dataset, keyword: str) -> Optional[Dataset]:
    seq = get(ds, keyword)
    if not seq:
        return None
    return seq[0]


def slice_geometry(ds: Dataset, require_orientation: bool = True) -> SliceGeometry:
    position = tuple(float(v) for v in _required(ds, "ImagePositionPatient"))
    orientation = get(ds, "ImageOrientationPatient")
    if orientation is None and require_orientation:
        raise CodecError("Required attribute ImageOrientationPatient is missing")
    spacing = tuple(float(v) for v in _required(ds, "PixelSpacing"))
    offsets = get(ds, "GridFrameOffsetVector")
    thickness = get(ds, "SliceThickness")
    return SliceGeometry(
        image_position=position,
        image_orientation=tuple(float(v) for v in orientation) if orientation is not None else (),
        pixel_spacing=spacing,
        rows=int(_required(ds, "Rows")),
        columns=int(_required(ds, "Columns")),
        frame_offsets=tuple(float(v) for v in offsets) if offsets is not None else None,
        slice_thickness=float(thickness) if thickness not in (None, "") else None,
        frame_of_reference_uid=_str_or_none(get(ds, "FrameOfReferenceUID")),
    )


def _pixels(ds: Dataset) -> np.ndarray:
    try:
        return ds.pixel_array
    except Exception as exc:
        raise CodecError(f"Pixel data could not be decoded: {exc}") from exc


def load_image_volume(
    datasets: Sequence[Dataset],
    tolerance: float = DEFAULT_SPACING_TOLERANCE,
) -> Volume:
    """Stack a single CT/MR series into a canonical ``[x, y, z]`` volume."""
    if not datasets:
        raise CodecError("No valid DICOM images were provided")
    tic = time.time()
    first = datasets[0]
    study = _str_or_none(get(first, "StudyInstanceUID"))
    series = _str_or_none(get(first, "SeriesInstanceUID"))
    for ds in datasets[1:]:
        if _str_or_none(get(ds, "StudyInstanceUID")) != study:
            raise CodecError("Multiple DICOM Study Instance UIDs were found. Please select only one study.")
        if _str_or_none(get(ds, "SeriesInstanceUID")) != series:
            raise CodecError("Multiple DICOM Series Instance UIDs were found. Please select only one series.")

    geometries = [slice_geometry(ds) for ds in datasets]
    frame, position, order = image_frame(geometries, tolerance)

    slices = []
    for idx in order:
        pixels = np.asarray(_pixels(datasets[int(idx)]))
        if pixels.shape != (frame.dimensions[1], frame.dimensions[0]):
            raise CodecError(f"Slice pixel array shape {pixels.shape} does not match Rows/Columns")
        slices.append(pixels.T)
    data = np.stack(slices, axis=2).astype(np.float32)
    np.maximum(data, 0, out=data)

    if _str_or_none(get(datasets[-1], "SeriesDescription")) == MVCT_SERIES_DESCRIPTION:
        modality = "MVCT"
    else:
        modality = _str_or_none(get(datasets[-1], "Modality"))
    logger.info("DICOM image type identified as %s", modality)

    volume = Volume(
        data=data,
        start=frame.start,
        width=frame.width,
        frame_of_reference_uid=_str_or_none(get(first, "FrameOfReferenceUID")),
        position=position,
        modality=modality,
    )
    logger.info(
        "DICOM images loaded successfully with dimensions (%i, %i, %i) in %0.3f seconds",
        *volume.dimensions,
        time.time() - tic,
    )
    return volume


def load_dose_volume(ds: Dataset, tolerance: float = DEFAULT_SPACING_TOLERANCE) -> Volume:
    """RT dose grid in Gy on its own canonical frame."""
    tic = time.time()
    geometry = slice_geometry(ds, require_orientation=False)
    frame, position, order = dose_frame(geometry, tolerance)
    pixels = np.asarray(_pixels(ds))
    if pixels.ndim == 2:
        pixels = pixels[np.newaxis]
    if pixels.shape != (frame.dimensions[2], frame.dimensions[1], frame.dimensions[0]):
        raise CodecError(
            f"Dose pixel array shape {pixels.shape} does not match frames/rows/columns {frame.dimensions[::-1]}"
        )
    scaling = float(get(ds, "DoseGridScaling", 1.0) or 1.0)
    data = pixels[order].transpose(2, 1, 0).astype(np.float64) * scaling
    volume = Volume(
        data=data,
        start=frame.start,
        width=frame.width,
        frame_of_reference_uid=_str_or_none(get(ds, "FrameOfReferenceUID")),
        position=position,
        modality="RTDOSE",
    )
    logger.info(
        "DICOM dose loaded successfully with dimensions (%i, %i, %i) in %0.3f seconds",
        *volume.dimensions,
        time.time() - tic,
    )
    return volume


def contour_sets(ds: Dataset, position: str = "HFS") -> List[ContourSet]:
    """ROI contour curves in canonical cm coordinates, in StructureSetROISequence order."""
    roi_contours = get(ds, "ROIContourSequence")
    if not roi_contours:
        raise CodecError("No contours were found")

    sets: Dict[int, ContourSet] = {}
    for roi in get(ds, "StructureSetROISequence") or []:
        number = int(roi.ROINumber)
        sets[number] = ContourSet(
            name=str(get(roi, "ROIName", f"ROI {number}")),
            number=number,
            frame_of_reference_uid=_str_or_none(get(roi, "ReferencedFrameOfReferenceUID")),
        )

    for ordinal, item in enumerate(roi_contours, start=1):
        number = get(item, "ReferencedROINumber")
        number = int(number) if number is not None else ordinal
        target = sets.get(number)
        if target is None:
            logger.warning("Contour item %d references unknown ROI number %d", ordinal, number)
            continue
        color = get(item, "ROIDisplayColor")
        if color is not None:
            target.color = tuple(int(c) for c in color)
        for contour in get(item, "ContourSequence") or []:
            data = get(contour, "ContourData") or []
            points = np.asarray([float(v) for v in data], dtype=float).reshape(-1, 3)
            target.curves.append(to_canonical(points, position) if points.size else points)
        logger.debug("Read structure %s (%d curves)", target.name, len(target.curves))
    return list(sets.values())


def load_structures(
    ds: Dataset,
    reference: Volume,
    atlas: Optional[Sequence[AtlasRule]] = None,
    ignore_frame_of_reference: bool = False,
) -> List[Structure]:
    tic = time.time()
    sets = contour_sets(ds, reference.position)
    rasterizer = ContourRasterizer(
        reference,
        ignore_frame_of_reference=ignore_frame_of_reference,
        atlas=atlas,
    )
    structures = rasterizer.rasterize_all(sets)
    logger.info("Structures loaded successfully in %0.3f seconds", time.time() - tic)
    return structures


def _energy(beam: Dataset) -> Optional[str]:
    cp = _first(beam, "ControlPointSequence")
    nominal = get(cp, "NominalBeamEnergy") if cp is not None else None
    if nominal is None:
        return None
    energy = f"{float(nominal):g}"
    # Standard plans carry the fluence mode in PrimaryFluenceModeSequence
    source = beam if get(beam, "FluenceMode") is not None else _first(beam, "PrimaryFluenceModeSequence")
    if source is not None and get(source, "FluenceMode") == "NON_STANDARD" and get(source, "FluenceModeID"):
        energy += str(source.FluenceModeID)
    return energy


def _plan_fields(ds: Dataset) -> Tuple[Dict[int, BeamInfo], Dict[int, Tuple[int, ...]], Tuple[float, ...]]:
    beams: Dict[int, BeamInfo] = {}
    for beam in get(ds, "BeamSequence") or []:
        beams[int(beam.BeamNumber)] = BeamInfo(
            name=_str_or_none(get(beam, "BeamName")),
            machine=_str_or_none(get(beam, "TreatmentMachineName")),
            energy=_energy(beam),
        )
    groups: Dict[int, Tuple[int, ...]] = {}
    for group in get(ds, "FractionGroupSequence") or []:
        groups[int(group.FractionGroupNumber)] = tuple(
            int(ref.ReferencedBeamNumber) for ref in get(group, "ReferencedBeamSequence") or []
        )
    setup: Tuple[float, ...] = ()
    patient_setup = _first(ds, "PatientSetupSequence")
    if patient_setup is not None:
        setup = tuple(
            float(device.SetupDeviceParameter)
            for device in get(patient_setup, "SetupDeviceSequence") or []
            if get(device, "SetupDeviceParameter") is not None
        )
    return beams, groups, setup


def scan_record(ds: Dataset, path: Path | str) -> Optional[ScanRecord]:
    """Metadata record for CT, MR, RTSTRUCT, RTPLAN and RTDOSE objects; None for anything else."""
    modality = _str_or_none(get(ds, "Modality"))
    uid = _str_or_none(get(ds, "SOPInstanceUID"))
    if modality not in ("CT", "MR", "RTSTRUCT", "RTPLAN", "RTDOSE") or not uid:
        logger.debug("Skipping %s (modality %s)", path, modality)
        return None

    record = ScanRecord(
        path=str(path),
        modality=modality,
        sop_instance_uid=uid,
        patient_name=_str_or_none(get(ds, "PatientName")),
        patient_id=_str_or_none(get(ds, "PatientID")),
        frame_of_reference_uid=_str_or_none(get(ds, "FrameOfReferenceUID")),
        study_instance_uid=_str_or_none(get(ds, "StudyInstanceUID")),
        series_instance_uid=_str_or_none(get(ds, "SeriesInstanceUID")),
    )
    # RT objects name their image study through ReferencedStudySequence
    ref_study = _first(ds, "ReferencedStudySequence")
    if ref_study is not None and modality.startswith("RT"):
        referenced = _str_or_none(get(ref_study, "ReferencedSOPInstanceUID"))
        record.study_instance_uid = referenced or record.study_instance_uid

    if modality == "CT" and _str_or_none(get(ds, "SeriesDescription")) == MVCT_SERIES_DESCRIPTION:
        record.modality = "MVCT"
    elif modality == "RTSTRUCT":
        ref_frame = _first(ds, "ReferencedFrameOfReferenceSequence")
        if ref_frame is not None:
            record.frame_of_reference_uid = _str_or_none(get(ref_frame, "FrameOfReferenceUID"))
    elif modality == "RTPLAN":
        record.plan_label = _str_or_none(get(ds, "RTPlanLabel"))
        record.beams, record.fraction_groups, record.setup_parameters = _plan_fields(ds)
    elif modality == "RTDOSE":
        record.dose_summation_type = _str_or_none(get(ds, "DoseSummationType"))
        ref_plan = _first(ds, "ReferencedRTPlanSequence")
        if ref_plan is not None:
            record.referenced_plan_uid = _str_or_none(get(ref_plan, "ReferencedSOPInstanceUID"))
            ref_group = _first(ref_plan, "ReferencedFractionGroupSequence")
            if ref_group is not None:
                number = get(ref_group, "ReferencedFractionGroupNumber")
                record.referenced_fraction_group = int(number) if number is not None else None
                ref_beam = _first(ref_group, "ReferencedBeamSequence")
                if ref_beam is not None and get(ref_beam, "ReferencedBeamNumber") is not None:
                    record.referenced_beam = int(ref_beam.ReferencedBeamNumber)
    return record


__all__ = [
    "slice_geometry",
    "load_image_volume",
    "load_dose_volume",
    "contour_sets",
    "load_structures",
    "scan_record",
]
