"""
Unit tests for stereo geometry module.
"""

import pytest
import math
import numpy as np
from dataclasses import replace
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from dualbokeh.config import LensCalibration, LensId, create_default_calibration
from dualbokeh.exceptions import GeometryDegeneracyError
from dualbokeh.geometry import (
    CalibrationAvailable,
    CalibrationUnavailable,
    assess_calibration,
    camera_matrix,
    derive_stereo_geometry,
    distortion_vector,
    relative_pose,
    rotation_from_quaternion,
)


def _axis_angle_quaternion(axis, angle):
    axis = np.asarray(axis, dtype=np.float64)
    axis = axis / np.linalg.norm(axis)
    s = math.sin(angle / 2.0)
    return (axis[0] * s, axis[1] * s, axis[2] * s, math.cos(angle / 2.0))


class TestCameraMatrix:
    """Tests for intrinsic matrix construction."""

    def test_camera_matrix(self):
        K = camera_matrix([1000, 1000, 500, 400, 0])
        expected = np.array([[1000, 0, 500], [0, 1000, 400], [0, 0, 1]], dtype=np.float64)
        np.testing.assert_array_equal(K, expected)

    def test_skew_placement(self):
        """Test skew lands in row 0, column 1."""
        K = camera_matrix([800, 900, 320, 240, 2.5])
        assert K[0, 1] == 2.5
        assert K[1, 1] == 900


class TestDistortionVector:
    """Tests for distortion coefficient reordering."""

    def test_permutation(self):
        np.testing.assert_array_equal(distortion_vector([1, 2, 3, 4, 5]), [1, 2, 4, 5, 3])

    def test_wrong_length(self):
        with pytest.raises(ValueError):
            distortion_vector([1, 2, 3, 4])


class TestQuaternion:
    """Tests for quaternion to rotation matrix conversion."""

    def test_identity(self):
        np.testing.assert_allclose(rotation_from_quaternion(0, 0, 0, 1), np.eye(3), atol=1e-12)

    @pytest.mark.parametrize("axis,angle", [
        ((1, 0, 0), 0.3),
        ((0, 1, 0), -1.2),
        ((0, 0, 1), math.pi / 2),
        ((1, 2, 3), 2.0),
    ])
    def test_orthonormal(self, axis, angle):
        """Test unit quaternions give proper rotations."""
        R = rotation_from_quaternion(*_axis_angle_quaternion(axis, angle))
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-9)
        assert abs(np.linalg.det(R) - 1.0) < 1e-9

    def test_rotation_about_z(self):
        """Test a 90 degree turn about z maps x onto y."""
        R = rotation_from_quaternion(*_axis_angle_quaternion((0, 0, 1), math.pi / 2))
        np.testing.assert_allclose(R @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0], atol=1e-12)


class TestRelativePose:
    """Tests for relative extrinsics."""

    def test_identical_poses_at_origin(self):
        """Test identical poses give identity rotation and zero translation."""
        pose = (np.eye(3), np.zeros(3))
        R, T = relative_pose(pose, pose)
        np.testing.assert_allclose(R, np.eye(3), atol=1e-12)
        np.testing.assert_allclose(T, np.zeros((3, 1)), atol=1e-12)
        assert T.shape == (3, 1)

    def test_translation_formula(self):
        """Test T = -R_A . t_A."""
        rotation_a = rotation_from_quaternion(*_axis_angle_quaternion((0, 1, 0), 0.2))
        translation_a = np.array([0.01, -0.002, 0.003])
        pose_b = (np.eye(3), np.array([-0.01, 0.0, 0.0]))

        R, T = relative_pose((rotation_a, translation_a), pose_b)
        np.testing.assert_allclose(T.ravel(), -rotation_a @ translation_a, atol=1e-12)
        np.testing.assert_allclose(R, rotation_a, atol=1e-9)

    def test_rotation_composition(self):
        """Test R = inv(R_B) . R_A."""
        rotation_a = rotation_from_quaternion(*_axis_angle_quaternion((1, 0, 0), 0.4))
        rotation_b = rotation_from_quaternion(*_axis_angle_quaternion((0, 0, 1), -0.7))
        R, _ = relative_pose((rotation_a, np.zeros(3)), (rotation_b, np.zeros(3)))
        np.testing.assert_allclose(R, rotation_b.T @ rotation_a, atol=1e-9)

    def test_singular_rotation(self):
        with pytest.raises(GeometryDegeneracyError):
            relative_pose((np.eye(3), np.zeros(3)), (np.zeros((3, 3)), np.zeros(3)))


class TestAssessCalibration:
    """Tests for the calibration variant decision."""

    @pytest.fixture
    def normal(self):
        return create_default_calibration(LensId.NORMAL, focal_length=1000.0, position=(0.0, 0.012, 0.0))

    @pytest.fixture
    def wide(self):
        return create_default_calibration(LensId.WIDE, focal_length=700.0, position=(0.012, 0.0, 0.0))

    def test_available(self, normal, wide):
        state = assess_calibration(normal, wide)
        assert isinstance(state, CalibrationAvailable)
        assert state.geometry.camera_matrix_normal[0, 0] == 1000.0
        assert state.geometry.camera_matrix_wide[0, 0] == 700.0
        assert state.geometry.T.shape == (3, 1)

    def test_missing_metadata(self, normal):
        state = assess_calibration(normal, LensCalibration(lens_id=LensId.WIDE))
        assert isinstance(state, CalibrationUnavailable)
        assert "wide" in state.reason

    def test_non_finite_values(self, normal, wide):
        broken = replace(wide, pose_translation=(float("nan"), 0.0, 0.0))
        assert isinstance(assess_calibration(normal, broken), CalibrationUnavailable)

    def test_zero_focal_length(self, normal, wide):
        broken = replace(normal, intrinsics=(0.0, 0.0, 320.0, 240.0, 0.0))
        assert isinstance(assess_calibration(normal, wide), CalibrationAvailable)
        assert isinstance(assess_calibration(broken, wide), CalibrationUnavailable)

    def test_derive_requires_metadata(self, normal):
        with pytest.raises(ValueError):
            derive_stereo_geometry(normal, LensCalibration(lens_id=LensId.WIDE))

    def test_baseline(self, normal, wide):
        """Test the normal lens position sets the baseline."""
        shifted = replace(normal, pose_translation=(0.0, 0.02, 0.0))
        geometry = derive_stereo_geometry(shifted, wide)
        assert abs(geometry.baseline - 0.02) < 1e-9

    def test_normal_lens_at_origin(self, normal, wide):
        """Test a reference lens at the pose origin falls back to unrectified."""
        at_origin = replace(normal, pose_translation=(0.0, 0.0, 0.0))
        with pytest.raises(GeometryDegeneracyError):
            derive_stereo_geometry(at_origin, wide)

        state = assess_calibration(at_origin, wide)
        assert isinstance(state, CalibrationUnavailable)
        assert "translation" in state.reason

    def test_identical_poses_unavailable(self):
        pose = create_default_calibration(LensId.NORMAL)
        assert isinstance(assess_calibration(pose, replace(pose, lens_id=LensId.WIDE)), CalibrationUnavailable)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
