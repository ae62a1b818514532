from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

IMAGE_MODALITIES = ("CT", "MR", "MVCT")


@dataclass(frozen=True)
class BeamInfo:
    name: Optional[str] = None
    machine: Optional[str] = None
    energy: Optional[str] = None


@dataclass
class ScanRecord:
    """Metadata of one scanned file. Only the fields relevant to its modality are filled."""

    path: str
    modality: str
    sop_instance_uid: str
    patient_name: Optional[str] = None
    patient_id: Optional[str] = None
    frame_of_reference_uid: Optional[str] = None
    study_instance_uid: Optional[str] = None
    series_instance_uid: Optional[str] = None
    # RTPLAN
    plan_label: Optional[str] = None
    beams: Dict[int, BeamInfo] = field(default_factory=dict)
    fraction_groups: Dict[int, Tuple[int, ...]] = field(default_factory=dict)
    setup_parameters: Tuple[float, ...] = ()
    # RTDOSE
    referenced_plan_uid: Optional[str] = None
    dose_summation_type: Optional[str] = None
    referenced_fraction_group: Optional[int] = None
    referenced_beam: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[str, str]:
        return (self.path, self.modality)


@dataclass
class ResolvedDose:
    """An RTDOSE record with its plan cross references resolved."""

    record: ScanRecord
    plan: Optional[ScanRecord] = None
    plan_label: Optional[str] = None
    beams: Tuple[BeamInfo, ...] = ()
    setup_parameters: Tuple[float, ...] = ()

    @property
    def beam_names(self) -> Tuple[Optional[str], ...]:
        return tuple(b.name for b in self.beams)

    @property
    def machines(self) -> Tuple[Optional[str], ...]:
        return tuple(b.machine for b in self.beams)

    @property
    def energies(self) -> Tuple[Optional[str], ...]:
        return tuple(b.energy for b in self.beams)


@dataclass
class StudyGroup:
    """Everything sharing one frame of reference."""

    frame_of_reference_uid: str
    images: Dict[str, List[ScanRecord]] = field(default_factory=dict)
    structures: List[ScanRecord] = field(default_factory=list)
    plans: List[ScanRecord] = field(default_factory=list)
    doses: List[ResolvedDose] = field(default_factory=list)


class ScanIndex:
    """UID-keyed index of scanned records.

    Duplicate SOP instance UIDs keep the record with the smallest
    ``(path, modality)``, so the result does not depend on insertion order.
    """

    def __init__(self, records: Iterable[ScanRecord] = ()):
        self._records: Dict[str, ScanRecord] = {}
        for record in records:
            self.add(record)

    def add(self, record: ScanRecord) -> None:
        if not record.sop_instance_uid:
            logger.warning("Skipping %s without SOP instance UID", record.path)
            return
        existing = self._records.get(record.sop_instance_uid)
        if existing is not None:
            logger.debug(
                "Duplicate SOP instance UID %s in %s and %s",
                record.sop_instance_uid,
                existing.path,
                record.path,
            )
            if existing.sort_key <= record.sort_key:
                return
        self._records[record.sop_instance_uid] = record

    def merge(self, other: "ScanIndex") -> "ScanIndex":
        merged = ScanIndex(self.records)
        for record in other.records:
            merged.add(record)
        return merged

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ScanRecord]:
        return iter(self.records)

    def __contains__(self, uid: object) -> bool:
        return uid in self._records

    def get(self, uid: Optional[str]) -> Optional[ScanRecord]:
        return self._records.get(uid or "")

    @property
    def records(self) -> List[ScanRecord]:
        return sorted(self._records.values(), key=lambda r: r.sort_key)

    def by_modality(self, *modalities: str) -> List[ScanRecord]:
        wanted = set(modalities)
        return [r for r in self.records if r.modality in wanted]

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for record in self._records.values():
            out[record.modality] = out.get(record.modality, 0) + 1
        return out

    def images_by_frame_of_reference(self) -> Dict[str, Dict[str, List[ScanRecord]]]:
        """frame of reference UID -> series UID -> image records."""
        out: Dict[str, Dict[str, List[ScanRecord]]] = {}
        for record in self.by_modality(*IMAGE_MODALITIES):
            series = out.setdefault(record.frame_of_reference_uid or "", {})
            series.setdefault(record.series_instance_uid or "", []).append(record)
        return out

    def structures_for(self, frame_of_reference_uid: Optional[str]) -> List[ScanRecord]:
        return [
            r for r in self.by_modality("RTSTRUCT")
            if r.frame_of_reference_uid == frame_of_reference_uid
        ]

    def _resolve(self, dose: ScanRecord) -> ResolvedDose:
        resolved = ResolvedDose(record=dose)
        if not dose.referenced_plan_uid:
            return resolved
        plan = self.get(dose.referenced_plan_uid)
        if plan is None or plan.modality != "RTPLAN":
            logger.info("Dose %s references plan %s which was not found", dose.path, dose.referenced_plan_uid)
            return resolved
        resolved.plan = plan
        resolved.plan_label = plan.plan_label

        summation = (dose.dose_summation_type or "").upper()
        if summation == "BEAM":
            group = dose.referenced_fraction_group
            beam = dose.referenced_beam
            if group is None or beam is None:
                logger.info("Beam dose %s does not reference a fraction group and beam", dose.path)
            elif group not in plan.fraction_groups:
                logger.info("Fraction group %s not found in plan %s", group, plan.path)
            elif beam not in plan.beams:
                logger.info("Beam %s not found in plan %s", beam, plan.path)
            else:
                resolved.beams = (plan.beams[beam],)
        elif summation == "PLAN":
            numbers: List[int] = []
            for group in sorted(plan.fraction_groups):
                numbers.extend(plan.fraction_groups[group])
            if not plan.fraction_groups:
                numbers = sorted(plan.beams)
            beams = []
            for number in numbers:
                if number in plan.beams:
                    beams.append(plan.beams[number])
                else:
                    logger.info("Beam %s not found in plan %s", number, plan.path)
            resolved.beams = tuple(beams)
            resolved.setup_parameters = plan.setup_parameters
        return resolved

    def resolve_doses(self) -> List[ResolvedDose]:
        return [self._resolve(dose) for dose in self.by_modality("RTDOSE")]

    def assemble(self) -> List[StudyGroup]:
        groups: Dict[str, StudyGroup] = {}

        def _group(uid: Optional[str]) -> StudyGroup:
            key = uid or ""
            if key not in groups:
                groups[key] = StudyGroup(frame_of_reference_uid=key)
            return groups[key]

        for for_uid, series in self.images_by_frame_of_reference().items():
            _group(for_uid).images = dict(sorted(series.items()))
        for record in self.by_modality("RTSTRUCT"):
            _group(record.frame_of_reference_uid).structures.append(record)
        for record in self.by_modality("RTPLAN"):
            _group(record.frame_of_reference_uid).plans.append(record)
        for resolved in self.resolve_doses():
            _group(resolved.record.frame_of_reference_uid).doses.append(resolved)

        for group in groups.values():
            group.structures.sort(key=lambda r: r.sop_instance_uid)
            group.plans.sort(key=lambda r: r.sop_instance_uid)
            group.doses.sort(key=lambda d: d.record.sop_instance_uid)
        return [groups[key] for key in sorted(groups)]

    def summary_frame(self) -> pd.DataFrame:
        resolved = {d.record.sop_instance_uid: d for d in self.resolve_doses()}
        rows = []
        for record in self.records:
            row = {
                "Path": record.path,
                "Modality": record.modality,
                "SOPInstanceUID": record.sop_instance_uid,
                "PatientName": record.patient_name,
                "PatientID": record.patient_id,
                "FrameOfReferenceUID": record.frame_of_reference_uid,
                "StudyInstanceUID": record.study_instance_uid,
                "SeriesInstanceUID": record.series_instance_uid,
                "PlanLabel": record.plan_label,
                "DoseSummationType": record.dose_summation_type,
                "BeamNames": None,
                "Machines": None,
                "Energies": None,
            }
            if record.modality == "RTPLAN":
                beams = [record.beams[n] for n in sorted(record.beams)]
                row["BeamNames"] = ", ".join(b.name or "" for b in beams) or None
                row["Machines"] = ", ".join(b.machine or "" for b in beams) or None
                row["Energies"] = ", ".join(b.energy or "" for b in beams) or None
            dose = resolved.get(record.sop_instance_uid)
            if dose is not None:
                row["PlanLabel"] = dose.plan_label
                row["BeamNames"] = ", ".join(n or "" for n in dose.beam_names) or None
                row["Machines"] = ", ".join(m or "" for m in dose.machines) or None
                row["Energies"] = ", ".join(e or "" for e in dose.energies) or None
            rows.append(row)
        return pd.DataFrame(rows)


def _scan_file(path: Path) -> Optional[ScanRecord]:
    from .ddose import ddose_record
    from .dicom import scan_record
    from .utils import read_dicom

    if path.suffix.lower() == ".3ddose":
        return ddose_record(path)
    ds = read_dicom(path, stop_before_pixels=True)
    if ds is None:
        return None
    return scan_record(ds, path)


def scan_paths(
    paths: Sequence[Path | str],
    max_workers: Optional[int] = None,
    include_3ddose: bool = True,
) -> ScanIndex:
    """Index every readable file under ``paths`` (files or directories)."""
    from .config import VoxelConfig
    from .utils import list_files, run_tasks

    tic = time.time()
    files: List[Path] = []
    for root in paths:
        files.extend(list_files(Path(root)))
    if not include_3ddose:
        files = [f for f in files if f.suffix.lower() != ".3ddose"]
    workers = max_workers or VoxelConfig().effective_workers()

    # Each worker builds its own partial index; merging is order independent
    chunks = [files[i::workers] for i in range(workers)] if files else []

    def _index_chunk(chunk: List[Path]) -> ScanIndex:
        partial = ScanIndex()
        for path in chunk:
            try:
                record = _scan_file(path)
            except Exception as exc:
                logger.debug("Skipping %s: %s", path, exc)
                continue
            if record is not None:
                partial.add(record)
        return partial

    index = ScanIndex()
    for partial in run_tasks("Scan", chunks, _index_chunk, max_workers=workers, logger=logger):
        if partial is not None:
            index = index.merge(partial)

    counts = index.counts()
    logger.info(
        "Scan completed, finding %d images, %d structure sets, %d plan and %d dose files in %0.3f seconds",
        sum(counts.get(m, 0) for m in IMAGE_MODALITIES),
        counts.get("RTSTRUCT", 0),
        counts.get("RTPLAN", 0),
        counts.get("RTDOSE", 0),
        time.time() - tic,
    )
    return index


__all__ = [
    "BeamInfo",
    "ScanRecord",
    "ResolvedDose",
    "StudyGroup",
    "ScanIndex",
    "scan_paths",
]
