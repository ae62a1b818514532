#!/usr/bin/env python3
"""
End-to-end check on a synthetic cube phantom: contours -> mask -> DVH,
plus NIfTI export of the resulting volumes and masks.

Usage:
    python test_end_to_end.py
"""

import sys
import logging
import tempfile
from pathlib import Path

import numpy as np
import pytest
import SimpleITK as sitk

from rtvoxel.atlas import AtlasRule
from rtvoxel.config import VoxelConfig, load_config
from rtvoxel.contours import ContourRasterizer, ContourSet
from rtvoxel.dvh import compute_dvh
from rtvoxel.export import write_structure_masks, write_volume
from rtvoxel.model import Structure, Volume

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

FOR_UID = "1.2.826.0.1.3680043.8.498.77"


def _square(lo, hi, z):
    return np.array([[lo, lo, z], [hi, lo, z], [hi, hi, z], [lo, hi, z]], dtype=float)


def _phantom():
    return Volume(np.zeros((10, 10, 10), dtype=np.float32), (0.0, 0.0, 0.0), (1.0, 1.0, 1.0), frame_of_reference_uid=FOR_UID)


def test_cube_phantom():
    image = _phantom()
    cube = ContourSet(
        name="cube",
        number=1,
        curves=[_square(3.5, 5.5, 4.0), _square(3.5, 5.5, 5.0)],
        frame_of_reference_uid=FOR_UID,
    )
    rasterized = ContourRasterizer(image).rasterize(cube)
    direct = np.zeros((10, 10, 10), dtype=bool)
    direct[4:6, 4:6, 4:6] = True
    assert np.array_equal(rasterized.mask, direct)
    assert rasterized.volume_cc == pytest.approx(8.0)

    dose = Volume(np.full((10, 10, 10), 2.0), (0.0, 0.0, 0.0), (1.0, 1.0, 1.0), frame_of_reference_uid=FOR_UID)
    result = compute_dvh(dose, [rasterized])
    assert result.volumes == [pytest.approx(8.0)]
    assert np.all(result.curve("cube")[result.dose <= 2.0] == 100.0)
    logger.info("✓ Cube phantom: %.2f cc fully covered by 2 Gy", result.volumes[0])


def test_export_places_voxels_in_patient_space():
    data = np.arange(24, dtype=np.float32).reshape(2, 3, 4)
    volume = Volume(data, (1.0, 2.0, 3.0), (0.5, 0.25, 2.0), position="FFS", modality="CT")
    mask = np.zeros((2, 3, 4), dtype=bool)
    mask[1, 2, 3] = True
    structure = Structure(name="PTV 70/35", mask=mask, start=volume.start, width=volume.width, dimensions=mask.shape)
    with tempfile.TemporaryDirectory() as tmp:
        path = write_volume(volume, Path(tmp) / "ct.nii.gz")
        img = sitk.ReadImage(str(path))
        written = write_structure_masks([structure, structure], Path(tmp) / "masks", position="FFS")
        names = [p.name for p in written]
        mask_img = sitk.ReadImage(str(written[0]))

    assert np.allclose(img.GetSpacing(), (5.0, 2.5, 20.0))
    # FFS flips canonical X and Z back to patient axes
    assert np.allclose(img.GetOrigin(), (-10.0, 20.0, -30.0), atol=1e-4)
    assert np.allclose(img.GetDirection(), (-1, 0, 0, 0, 1, 0, 0, 0, -1), atol=1e-6)
    assert np.array_equal(sitk.GetArrayFromImage(img).transpose(2, 1, 0), data)

    assert names == ["PTV_70_35.nii.gz", "PTV_70_35_2.nii.gz"]
    assert np.array_equal(sitk.GetArrayFromImage(mask_img).transpose(2, 1, 0).astype(bool), mask)


def test_yaml_config():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "rtvoxel.yaml"
        path.write_text(
            "nbins: 250\n"
            "workers: 3\n"
            "export_masks: masks\n"
            "unknown_key: 1\n"
            "atlas:\n"
            "  - include: couch\n"
            "    load: false\n"
        )
        cfg = load_config(path)
    assert cfg.nbins == 250
    assert cfg.effective_workers() == 3
    assert cfg.export_masks == Path("masks")
    assert cfg.atlas == [AtlasRule(include="couch", load=False)]
    assert not hasattr(cfg, "unknown_key")
    assert VoxelConfig().spacing_tolerance == 0.01


def main():
    """Run end-to-end tests."""
    tests = [
        test_cube_phantom,
        test_export_places_voxels_in_patient_space,
        test_yaml_config,
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
