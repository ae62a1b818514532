#!/usr/bin/env python3
"""
Tests for orientation handling and grid pitch derivation.

Usage:
    python test_geometry.py
"""

import sys
import logging

import numpy as np
import pytest

from rtvoxel.errors import GeometryError, NonUniformSpacingError, UnsupportedOrientationError
from rtvoxel.geometry import (
    ORIENTATION_COSINES,
    SliceGeometry,
    axis_from_boundaries,
    axis_from_positions,
    classify_orientation,
    dose_frame,
    image_frame,
    orientation_signs,
    to_canonical,
    uniform_pitch,
)
from rtvoxel.model import GridFrame, Volume

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _slice(z, orientation=ORIENTATION_COSINES["HFS"], position=(-50.0, -30.0), spacing=(2.0, 3.0), rows=4, columns=5):
    return SliceGeometry(
        image_position=(position[0], position[1], z),
        image_orientation=orientation,
        pixel_spacing=spacing,
        rows=rows,
        columns=columns,
        slice_thickness=2.5,
    )


def test_orientation_round_trip():
    """Applying the sign triple twice returns the original coordinates."""
    rng = np.random.default_rng(7)
    points = rng.uniform(-300, 300, size=(20, 3))
    for code, cosines in ORIENTATION_COSINES.items():
        assert classify_orientation(cosines) == code
        canonical = to_canonical(points, code)
        back = canonical * orientation_signs(code) * 10.0
        assert np.allclose(back, points), code
        assert np.array_equal(orientation_signs(code) * orientation_signs(code), np.ones(3))
    logger.info("✓ Sign triples are involutions for all four positions")


def test_orientation_tolerates_rounding():
    noisy = np.array(ORIENTATION_COSINES["FFP"]) + 1e-6
    assert classify_orientation(noisy) == "FFP"


def test_oblique_orientation_rejected():
    oblique = (0.7071, 0.7071, 0.0, -0.7071, 0.7071, 0.0)
    with pytest.raises(UnsupportedOrientationError):
        classify_orientation(oblique)
    with pytest.raises(UnsupportedOrientationError):
        orientation_signs("XYZ")


def test_spacing_acceptance_and_rejection():
    # Asymmetric: one gap slightly wider
    assert uniform_pitch([0.0, 1.0, 2.0, 3.005]) == pytest.approx(3.005 / 3)
    with pytest.raises(NonUniformSpacingError):
        uniform_pitch([0.0, 1.0, 2.0, 3.02])

    # Symmetric: alternating narrow/wide gaps around the mean
    assert uniform_pitch([0.0, 0.998, 2.0, 2.998, 4.0]) == pytest.approx(1.0)
    with pytest.raises(NonUniformSpacingError):
        uniform_pitch([0.0, 0.99, 2.0, 2.99, 4.0])

    # Descending input gives the same pitch
    assert uniform_pitch([3.0, 2.0, 1.0, 0.0]) == pytest.approx(1.0)

    with pytest.raises(NonUniformSpacingError):
        uniform_pitch([1.0])
    with pytest.raises(NonUniformSpacingError):
        uniform_pitch([1.0, 1.0, 1.0])
    logger.info("✓ Pitch deviation rule accepts <1%% and rejects >1%%")


def test_axis_from_boundaries():
    start, width, count = axis_from_boundaries([1.5, 1.0, 0.5, 0.0])
    assert start == pytest.approx(0.25)
    assert width == pytest.approx(0.5)
    assert count == 3


def test_axis_from_positions_orders_ascending():
    start, width, order = axis_from_positions([1.0, 0.0, 2.0])
    assert start == 0.0
    assert width == pytest.approx(1.0)
    assert list(order) == [1, 0, 2]


def test_image_frame_head_first():
    geometries = [_slice(5.0), _slice(0.0), _slice(10.0)]
    frame, position, order = image_frame(geometries)
    assert position == "HFS"
    assert list(order) == [1, 0, 2]
    assert frame.dimensions == (5, 4, 3)
    assert np.allclose(frame.width, (0.3, 0.2, 0.5))
    assert np.allclose(frame.start, (-5.0, -3.0, 0.0))


def test_image_frame_feet_first():
    geometries = [_slice(z, orientation=ORIENTATION_COSINES["FFS"]) for z in (0.0, 5.0, 10.0)]
    frame, position, order = image_frame(geometries)
    assert position == "FFS"
    # Canonical Z is flipped, so the last DICOM slice comes first
    assert list(order) == [2, 1, 0]
    assert np.allclose(frame.start, (5.0, -3.0, -1.0))


def test_image_frame_rejects_mixed_series():
    mixed = [_slice(0.0), _slice(5.0, orientation=ORIENTATION_COSINES["HFP"])]
    with pytest.raises(GeometryError):
        image_frame(mixed)
    with pytest.raises(NonUniformSpacingError):
        image_frame([_slice(0.0), _slice(5.0), _slice(12.0)])
    with pytest.raises(GeometryError):
        image_frame([])


def test_single_slice_uses_thickness():
    frame, _, order = image_frame([_slice(20.0)])
    assert frame.dimensions[2] == 1
    assert frame.width[2] == pytest.approx(0.25)
    assert frame.start[2] == pytest.approx(2.0)
    assert list(order) == [0]

    bare = SliceGeometry((0.0, 0.0, 0.0), ORIENTATION_COSINES["HFS"], (1.0, 1.0), 2, 2)
    with pytest.raises(NonUniformSpacingError):
        image_frame([bare])


def test_dose_frame_defaults_to_head_first_supine():
    geometry = SliceGeometry(
        image_position=(0.0, 10.0, -10.0),
        image_orientation=(),
        pixel_spacing=(2.5, 2.5),
        rows=3,
        columns=2,
        frame_offsets=(0.0, 2.5, 5.0),
    )
    frame, position, order = dose_frame(geometry)
    assert position == "HFS"
    assert list(order) == [0, 1, 2]
    assert np.allclose(frame.start, (0.0, 1.0, -1.0))
    assert np.allclose(frame.width, (0.25, 0.25, 0.25))
    assert frame.dimensions == (2, 3, 3)


def test_grid_validation():
    with pytest.raises(GeometryError):
        GridFrame((0, 0, 0), (1.0, 0.0, 1.0), (2, 2, 2))
    with pytest.raises(GeometryError):
        GridFrame((0, 0, 0), (1.0, 1.0, 1.0), (2, 0, 2))
    with pytest.raises(GeometryError):
        Volume(np.zeros((2, 2)), (0, 0, 0), (1, 1, 1))
    frame = GridFrame((0, 0, 0), (0.5, 0.5, 2.0), (2, 3, 4))
    assert frame.voxel_volume == pytest.approx(0.5)
    assert np.allclose(frame.coordinates(2), [0.0, 2.0, 4.0, 6.0])


def main():
    """Run all geometry tests."""
    tests = [
        test_orientation_round_trip,
        test_orientation_tolerates_rounding,
        test_oblique_orientation_rejected,
        test_spacing_acceptance_and_rejection,
        test_axis_from_boundaries,
        test_axis_from_positions_orders_ascending,
        test_image_frame_head_first,
        test_image_frame_feet_first,
        test_image_frame_rejects_mixed_series,
        test_single_slice_uses_thickness,
        test_dose_frame_defaults_to_head_first_supine,
        test_grid_validation,
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
