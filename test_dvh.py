#!/usr/bin/env python3
"""
Tests for cumulative DVH computation, the DVH table writer and DVH metrics.

Usage:
    python test_dvh.py
"""

import sys
import logging
import tempfile
from pathlib import Path

import numpy as np
import pytest

from rtvoxel.dvh import compute_dvh, dvh_metrics, write_dvh
from rtvoxel.errors import EmptyDoseError, GeometryError
from rtvoxel.model import Structure, Volume

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

START = (0.0, 0.0, 0.0)
WIDTH = (1.0, 1.0, 1.0)
DIMS = (10, 10, 10)


def _structure(name, mask, width=WIDTH):
    return Structure(name=name, mask=mask, start=START, width=width, dimensions=mask.shape)


def _cube_mask():
    mask = np.zeros(DIMS, dtype=bool)
    mask[4:6, 4:6, 4:6] = True
    return mask


def test_uniform_dose_step_curve():
    dose = Volume(np.full(DIMS, 2.0), START, WIDTH)
    result = compute_dvh(dose, [_structure("cube", _cube_mask())])
    assert result.dose.size == 1001
    assert result.dose[0] == 0.0 and result.dose[-1] == 2.0
    assert np.all(result.curve("cube") == 100.0)
    assert result.volumes == [8.0]
    assert result.dmean == [2.0]
    assert result.empty == []


def test_two_level_dose():
    data = np.full(DIMS, 1.0)
    data[:, :, 5:] = 3.0
    result = compute_dvh(Volume(data, START, WIDTH), [_structure("cube", _cube_mask())], nbins=300)
    curve = result.curve("cube")
    assert np.all(curve[result.dose <= 1.0] == 100.0)
    assert np.all(curve[result.dose > 1.0] == 50.0)


def test_zero_dose_voxels_are_counted():
    data = np.full(DIMS, 2.0)
    data[:, :, :5] = 0.0
    result = compute_dvh(Volume(data, START, WIDTH), [_structure("cube", _cube_mask())])
    curve = result.curve("cube")
    assert curve[0] == 100.0
    assert np.all(curve[1:] == 50.0)
    assert result.dmin == [0.0]


def test_monotonic_on_random_input():
    rng = np.random.default_rng(42)
    dose = Volume(rng.gamma(2.0, 10.0, size=DIMS), START, WIDTH)
    structures = [_structure(f"s{i}", rng.random(DIMS) < 0.3) for i in range(4)]
    result = compute_dvh(dose, structures, nbins=200)
    assert result.percent.shape == (201, 4)
    assert np.all(np.diff(result.percent, axis=0) <= 0.0)
    assert np.all(result.percent[0] == 100.0)
    assert np.all(result.percent >= 0.0) and np.all(result.percent <= 100.0)
    logger.info("✓ DVH curves are non-increasing for random dose and masks")


def test_empty_structure_gets_zero_column():
    dose = Volume(np.full(DIMS, 2.0), START, WIDTH)
    empty = _structure("nothing", np.zeros(DIMS, dtype=bool))
    result = compute_dvh(dose, [_structure("cube", _cube_mask()), empty])
    assert result.empty == ["nothing"]
    assert np.all(result.curve("nothing") == 0.0)
    assert not np.isnan(result.percent).any()


def test_empty_dose_is_fatal():
    with pytest.raises(EmptyDoseError):
        compute_dvh(Volume(np.zeros(DIMS), START, WIDTH), [_structure("cube", _cube_mask())])


def test_dose_on_other_grid_is_resampled():
    coarse = Volume(np.full((5, 5, 5), 2.0), START, (2.0, 2.0, 2.0))
    result = compute_dvh(coarse, [_structure("cube", _cube_mask())])
    assert result.max_dose == pytest.approx(2.0)
    assert np.all(result.curve("cube") == 100.0)


def test_structures_must_share_a_grid():
    dose = Volume(np.full(DIMS, 2.0), START, WIDTH)
    a = _structure("a", _cube_mask())
    b = _structure("b", _cube_mask(), width=(0.5, 0.5, 0.5))
    with pytest.raises(GeometryError):
        compute_dvh(dose, [a, b])


def test_write_dvh_layout():
    dose = Volume(np.full(DIMS, 2.0), START, WIDTH)
    result = compute_dvh(dose, [_structure("cube", _cube_mask()), _structure("half", _cube_mask())], nbins=4)
    with tempfile.TemporaryDirectory() as tmp:
        path = write_dvh(result, Path(tmp) / "dvh.csv", source="dose.dcm")
        lines = path.read_text().splitlines()
    assert lines[0] == "#,dose.dcm"
    assert lines[1] == ",cube (1)(volume: 8.00),half (2)(volume: 8.00)"
    assert len(lines) == 2 + 5
    assert lines[2] == "0,100,100"
    assert lines[-1] == "2,100,100"
    frame = result.to_frame()
    assert list(frame.columns) == ["Dose (Gy)", "cube", "half"]


def test_metrics():
    dose = Volume(np.full(DIMS, 2.0), START, WIDTH)
    result = compute_dvh(dose, [_structure("cube", _cube_mask())])
    metrics = dvh_metrics(result, prescription=2.0)
    row = metrics.iloc[0]
    assert row["ROI_Name"] == "cube"
    assert row["DmeanGy"] == pytest.approx(2.0)
    assert row["D95Gy"] == pytest.approx(2.0)
    assert row["V1Gy (%)"] == pytest.approx(100.0)
    assert row["V2Gy (%)"] == pytest.approx(100.0)
    assert row["V100%Rx (%)"] == pytest.approx(100.0)
    assert row["Volume (cm³)"] == pytest.approx(8.0)
    assert "V3Gy (%)" not in metrics.columns


def main():
    """Run all DVH tests."""
    tests = [
        test_uniform_dose_step_curve,
        test_two_level_dose,
        test_zero_dose_voxels_are_counted,
        test_monotonic_on_random_input,
        test_empty_structure_gets_zero_column,
        test_empty_dose_is_fatal,
        test_dose_on_other_grid_is_resampled,
        test_structures_must_share_a_grid,
        test_write_dvh_layout,
        test_metrics,
    ]
    failed = 0
    for test_func in tests:
        try:
            test_func()
            logger.info("✅ %s", test_func.__name__)
        except Exception as e:
            logger.error("❌ %s failed: %s", test_func.__name__, e)
            failed += 1
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
