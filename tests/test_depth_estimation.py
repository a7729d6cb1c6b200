"""
Unit tests for depth estimation module.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from dualbokeh.config import DisparityConfig, LensId, create_default_calibration
from dualbokeh.exceptions import EngineFailureError
from dualbokeh.depth_estimation import DepthEstimator, DepthResult, normalize_to_u8, to_gray
from dualbokeh.frames import TransformKind, apply_frame, working_frame
from dualbokeh.geometry import CalibrationUnavailable, assess_calibration

NORMAL_ROWS = (160, 320)
SHIFT = 8


def make_shifted_pair(shift=SHIFT, seed=7):
    """
    Textured 640x480 pair whose central band sits ``shift`` rows lower in
    the wide frame. After the clockwise rotation into the matching frame
    the row offset becomes a positive horizontal disparity.
    """
    rng = np.random.RandomState(seed)
    normal = rng.randint(0, 256, size=(480, 640), dtype=np.uint8)
    wide = normal.copy()

    top, bottom = NORMAL_ROWS
    patch = rng.randint(0, 256, size=(bottom - top, 640), dtype=np.uint8)
    normal[top:bottom] = patch
    wide[top + shift:bottom + shift] = patch
    return normal, wide


def region_mask(rows, cols, size=(640, 480)):
    mask = np.zeros((size[1], size[0]), dtype=np.uint8)
    mask[rows[0]:rows[1], cols[0]:cols[1]] = 255
    return mask


class TestDepthEstimator:
    """Tests for DepthEstimator class."""

    @pytest.fixture
    def estimator(self):
        """Create test estimator."""
        return DepthEstimator(DisparityConfig(), downscale_factor=0.5)

    @pytest.fixture
    def synthetic_pair(self):
        return make_shifted_pair()

    def test_estimator_initialization(self, estimator):
        """Test estimator is properly initialized."""
        assert estimator.num_disparities == 32
        assert estimator.window_size == 5
        assert estimator.downscale_factor == 0.5
        assert not estimator.invert_matcher

    def test_num_disparities_rounded(self):
        """Test disparities are rounded down to a multiple of 16."""
        assert DepthEstimator(DisparityConfig(num_disparities=40)).num_disparities == 32
        assert DepthEstimator(DisparityConfig(num_disparities=5)).num_disparities == 16

    def test_window_forced_odd(self):
        assert DepthEstimator(DisparityConfig(window_size=4)).window_size == 5

    def test_compute_disparity_shapes(self, estimator, synthetic_pair):
        normal, wide = synthetic_pair
        primary, secondary = estimator.compute_disparity(normal, wide)
        assert primary.shape == normal.shape
        assert secondary.shape == normal.shape
        assert primary.dtype == np.int16

    def test_invert_matcher_swaps(self, synthetic_pair):
        normal, wide = synthetic_pair
        left, right = DepthEstimator().compute_disparity(normal, wide)
        swapped_primary, swapped_secondary = DepthEstimator(invert_matcher=True).compute_disparity(normal, wide)
        np.testing.assert_array_equal(swapped_primary, right)
        np.testing.assert_array_equal(swapped_secondary, left)

    def test_engine_failure(self, estimator):
        """Test engine errors surface as EngineFailureError."""
        normal = np.zeros((100, 100), dtype=np.uint8)
        wide = np.zeros((80, 100), dtype=np.uint8)
        with pytest.raises(EngineFailureError) as exc_info:
            estimator.compute_disparity(normal, wide)
        assert exc_info.value.stage == "disparity"

    def test_unrectified_estimate(self, estimator, synthetic_pair):
        """Test the unrectified path output and its frame tag."""
        normal, wide = synthetic_pair
        result = estimator.estimate(normal, wide, CalibrationUnavailable("test"))

        assert isinstance(result, DepthResult)
        assert not result.rectified
        assert result.disparity.image.dtype == np.uint8
        assert result.disparity.size == (240, 320)
        assert result.disparity.frame == working_frame((640, 480), 0.5)
        assert "rectified_normal_shot" not in result.stages
        for name in ("disparity_map", "disparity_map_2", "disparity_map_filtered_normalized"):
            assert name in result.stages
        assert result.computation_time_ms > 0

    def test_wide_resized_to_normal(self, estimator):
        """Test a differently sized wide frame is matched at the normal size."""
        normal, wide = make_shifted_pair()
        wide = np.ascontiguousarray(np.repeat(np.repeat(wide, 2, axis=0), 2, axis=1))
        result = estimator.estimate(normal, wide, CalibrationUnavailable("test"))
        assert result.disparity.frame.sensor_size == (640, 480)

    def test_rectified_estimate(self, estimator, synthetic_pair):
        """Test the rectified path records its stages."""
        normal_cal = create_default_calibration(LensId.NORMAL, position=(0.0, 0.012, 0.0))
        wide_cal = create_default_calibration(LensId.WIDE)
        calibration = assess_calibration(normal_cal, wide_cal)

        normal, wide = synthetic_pair
        result = estimator.estimate(normal, wide, calibration)

        assert result.rectified
        assert result.stages["rectified_normal_shot"].shape == normal.shape
        assert result.stages["rectified_wide_shot"].shape == normal.shape
        assert result.disparity.size == (240, 320)

    def test_shifted_region_has_higher_disparity(self, synthetic_pair):
        """Test the shifted band stands out in the filtered disparity."""
        estimator = DepthEstimator(downscale_factor=1.0)
        normal, wide = synthetic_pair
        result = estimator.estimate(normal, wide, CalibrationUnavailable("test"))
        disparity = result.disparity

        patch = apply_frame(region_mask((176, 304), (100, 540)), disparity.frame, nearest=True).image
        background = apply_frame(region_mask((20, 120), (100, 540)), disparity.frame, nearest=True).image

        patch_mean = disparity.image[patch > 0].mean()
        background_mean = disparity.image[background > 0].mean()
        assert patch_mean > background_mean + 10

    def test_matching_frame_rotation(self, estimator):
        """Test matching happens on the clockwise rotated frame."""
        kinds = [t.kind for t in working_frame((640, 480), estimator.downscale_factor).transforms]
        assert kinds == [TransformKind.SCALE, TransformKind.ROTATE_90]


class TestHelpers:
    """Tests for conversion helpers."""

    def test_to_gray(self):
        color = np.zeros((10, 20, 3), dtype=np.uint8)
        assert to_gray(color).shape == (10, 20)
        gray = np.zeros((10, 20), dtype=np.uint8)
        assert to_gray(gray) is gray

    def test_normalize_to_u8(self):
        raw = np.array([[-16, 0], [160, 496]], dtype=np.int16)
        normalized = normalize_to_u8(raw)
        assert normalized.dtype == np.uint8
        assert normalized.min() == 0
        assert normalized.max() == 255


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
