from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import EmptyDoseError, GeometryError
from .model import Structure, Volume
from .resample import VolumeResampler

logger = logging.getLogger(__name__)

DEFAULT_NBINS = 1000


@dataclass
class DVHResult:
    """Cumulative DVH curves sharing one dose axis.

    ``percent[:, i]`` is the percentage of structure ``i`` receiving at least
    ``dose[k]`` Gy.
    """

    dose: np.ndarray
    names: List[str]
    percent: np.ndarray
    volumes: List[float]
    dmin: List[float] = field(default_factory=list)
    dmean: List[float] = field(default_factory=list)
    dmax: List[float] = field(default_factory=list)
    empty: List[str] = field(default_factory=list)

    @property
    def max_dose(self) -> float:
        return float(self.dose[-1])

    @property
    def nbins(self) -> int:
        return int(self.dose.size - 1)

    def curve(self, name: str) -> np.ndarray:
        try:
            return self.percent[:, self.names.index(name)]
        except ValueError:
            raise KeyError(name) from None

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(self.percent, columns=self.names)
        df.insert(0, "Dose (Gy)", self.dose)
        return df


def cumulative_percent(samples: np.ndarray, dose_axis: np.ndarray) -> np.ndarray:
    """Percent of ``samples`` at or above each dose in ``dose_axis``; zeros when there are no samples."""
    n = samples.size
    if n == 0:
        return np.zeros(dose_axis.size, dtype=float)
    ordered = np.sort(samples)
    below = np.searchsorted(ordered, dose_axis, side="left")
    return 100.0 * (n - below) / n


def _common_frame(structures: Sequence[Structure]):
    frame = structures[0].frame
    for structure in structures[1:]:
        if not structure.frame.matches(frame):
            raise GeometryError(
                f"Structure {structure.name} is not on the same grid as {structures[0].name}"
            )
    return frame


def compute_dvh(
    dose: Volume,
    structures: Sequence[Structure],
    nbins: int = DEFAULT_NBINS,
    resampler: Optional[VolumeResampler] = None,
) -> DVHResult:
    """Cumulative DVH of ``dose`` for every structure, with the dose resampled onto the structures' grid."""
    if nbins < 1:
        raise ValueError(f"nbins must be positive, got {nbins}")
    tic = time.time()
    logger.info("Computing dose volume histograms")
    if structures:
        frame = _common_frame(structures)
        if not dose.frame.matches(frame):
            dose = (resampler or VolumeResampler()).resample(dose, frame)

    data = np.asarray(dose.data, dtype=np.float64)
    finite = data[np.isfinite(data)]
    max_dose = float(finite.max()) if finite.size else 0.0
    if not max_dose > 0:
        raise EmptyDoseError("The dose array is empty (maximum dose is not positive)")

    axis = np.linspace(0.0, max_dose, nbins + 1)
    percent = np.zeros((axis.size, len(structures)), dtype=float)
    result = DVHResult(
        dose=axis,
        names=[s.name for s in structures],
        percent=percent,
        volumes=[s.volume_cc for s in structures],
    )
    for i, structure in enumerate(structures):
        samples = data[structure.mask]
        samples = samples[np.isfinite(samples)]
        percent[:, i] = cumulative_percent(samples, axis)
        if samples.size == 0:
            logger.warning("Structure %s has no dose samples; DVH column is zero", structure.name)
            result.empty.append(structure.name)
            result.dmin.append(float("nan"))
            result.dmean.append(float("nan"))
            result.dmax.append(float("nan"))
            continue
        result.dmin.append(float(samples.min()))
        result.dmean.append(float(samples.mean()))
        result.dmax.append(float(samples.max()))

    logger.info(
        "Dose volume histograms completed for %d structures in %0.3f seconds",
        len(structures),
        time.time() - tic,
    )
    return result


def write_dvh(result: DVHResult, path: Union[str, Path], source: Optional[str] = None) -> Path:
    """Write the DVH table as text: source line, structure header line, then one row per dose bin."""
    path = Path(path)
    source = source if source is not None else path.name
    logger.info("Writing dose volume histogram to %s", path.name)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        fh.write(f"#,{source}\n")
        fh.write(
            "".join(
                f",{name} ({i})(volume: {volume:0.2f})"
                for i, (name, volume) in enumerate(zip(result.names, result.volumes), start=1)
            )
        )
        fh.write("\n")
        for k, dose in enumerate(result.dose):
            values = [dose] + list(result.percent[k, :])
            fh.write(",".join(f"{v:g}" for v in values))
            fh.write("\n")
    return path


def _dose_at_fraction(bins, cumulative, fraction: float) -> float:
    V_total = cumulative[0]
    target = fraction * V_total
    idx = np.where(cumulative <= target)[0]
    if idx.size == 0:
        return float(bins[-1])
    i = int(idx[0])
    if i == 0:
        return float(bins[0])
    x0, x1 = float(bins[i - 1]), float(bins[i])
    y0, y1 = float(cumulative[i - 1]), float(cumulative[i])
    if y1 == y0:
        return x0
    return x0 + (target - y0) * (x1 - x0) / (y1 - y0)


def _get_volume_at_threshold(bins, cumulative, threshold: float) -> float:
    V_total = cumulative[0]
    if threshold <= bins[0]:
        return float(V_total)
    if threshold > bins[-1]:
        return 0.0
    i = int(np.searchsorted(bins, threshold, side="left"))
    x0, x1 = float(bins[i - 1]), float(bins[i])
    y0, y1 = float(cumulative[i - 1]), float(cumulative[i])
    if x1 == x0:
        return y0
    return y0 + (y1 - y0) * (threshold - x0) / (x1 - x0)


def _structure_metrics(
    bins: np.ndarray,
    pct: np.ndarray,
    volume_cc: float,
    dmin: float,
    dmean: float,
    dmax: float,
    rx_dose: Optional[float],
) -> Dict[str, Optional[float]]:
    D95Gy = _dose_at_fraction(bins, pct, 0.95)
    D98Gy = _dose_at_fraction(bins, pct, 0.98)
    D2Gy = _dose_at_fraction(bins, pct, 0.02)
    D50Gy = _dose_at_fraction(bins, pct, 0.50)
    metrics: Dict[str, Optional[float]] = {
        "DmeanGy": dmean,
        "DmaxGy": dmax,
        "DminGy": dmin,
        "D95Gy": D95Gy,
        "D98Gy": D98Gy,
        "D2Gy": D2Gy,
        "D50Gy": D50Gy,
        "HI": (D2Gy - D98Gy) / D50Gy if D50Gy != 0 else float("nan"),
        "SpreadGy": dmax - dmin,
        "Volume (cm³)": volume_cc,
        "IntegralDose_Gycm3": dmean * volume_cc,
    }

    # Hottest small volumes, commonly reported for OARs
    metrics["D1ccGy"] = _dose_at_fraction(bins, pct, 1.0 / volume_cc) if volume_cc >= 1.0 else None
    metrics["D0.1ccGy"] = _dose_at_fraction(bins, pct, 0.1 / volume_cc) if volume_cc >= 0.1 else None

    if rx_dose and rx_dose > 0:
        metrics["V95%Rx (%)"] = _get_volume_at_threshold(bins, pct, 0.95 * rx_dose)
        metrics["V100%Rx (%)"] = _get_volume_at_threshold(bins, pct, 1.00 * rx_dose)
    else:
        metrics["V95%Rx (%)"] = None
        metrics["V100%Rx (%)"] = None

    for x in range(1, int(np.floor(bins[-1])) + 1):
        metrics[f"V{x}Gy (%)"] = _get_volume_at_threshold(bins, pct, float(x))
    return metrics


def dvh_metrics(result: DVHResult, prescription: Optional[float] = None) -> pd.DataFrame:
    """Per-structure dose statistics and dose/volume points read off the DVH curves."""
    rows = []
    for i, name in enumerate(result.names):
        if name in result.empty:
            logger.debug("Skipping metrics for empty structure %s", name)
            continue
        metrics = _structure_metrics(
            result.dose,
            result.percent[:, i],
            result.volumes[i],
            result.dmin[i],
            result.dmean[i],
            result.dmax[i],
            prescription,
        )
        metrics = {"ROI_Name": name, "ROI_Index": i + 1, **metrics}
        rows.append(metrics)
    return pd.DataFrame(rows)


__all__ = [
    "DEFAULT_NBINS",
    "DVHResult",
    "compute_dvh",
    "cumulative_percent",
    "write_dvh",
    "dvh_metrics",
]
