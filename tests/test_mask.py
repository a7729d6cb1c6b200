"""
Unit tests for mask builder module.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from dualbokeh.frames import TaggedImage, apply_frame, restore, working_frame
from dualbokeh.mask import (
    BACKGROUND,
    FOREGROUND,
    build_mask,
    clip_rect,
    face_protection_layer,
    hard_normalize,
    protect_face,
)

SENSOR_SIZE = (640, 480)
FACE = (200, 100, 120, 160)


@pytest.fixture
def matching_frame():
    return working_frame(SENSOR_SIZE, 0.5)


@pytest.fixture
def compositing_frame():
    return working_frame(SENSOR_SIZE, 0.5, flip=True)


@pytest.fixture
def low_disparity(matching_frame):
    """Disparity everywhere below the default threshold."""
    width, height = matching_frame.transforms[-1].target_size
    return TaggedImage(np.full((height, width), 100, dtype=np.uint8), matching_frame)


class TestHardNormalize:
    """Tests for disparity thresholding."""

    def test_threshold_inclusive(self):
        disparity = np.array([[127, 128, 129, 0, 255]], dtype=np.uint8)
        mask = hard_normalize(disparity, 128)
        np.testing.assert_array_equal(mask, [[0, 255, 255, 0, 255]])
        assert mask.dtype == np.uint8

    def test_binary_output(self):
        disparity = np.arange(256, dtype=np.uint8).reshape(16, 16)
        mask = hard_normalize(disparity, 77)
        assert set(np.unique(mask)) == {BACKGROUND, FOREGROUND}


class TestClipRect:
    """Tests for rectangle clipping."""

    def test_inside(self):
        assert clip_rect((10, 10, 20, 20), (100, 100)) == (10, 10, 20, 20)

    def test_partially_outside(self):
        assert clip_rect((-10, 90, 30, 30), (100, 100)) == (0, 90, 20, 10)

    def test_fully_outside(self):
        assert clip_rect((200, 200, 10, 10), (100, 100)) is None


class TestFaceProtection:
    """Tests for forcing the face into the foreground."""

    def test_layer_follows_chain(self, compositing_frame):
        """Test the layer maps back onto the face box in the sensor frame."""
        layer = face_protection_layer(FACE, SENSOR_SIZE, compositing_frame)
        assert layer.frame == compositing_frame

        sensor = restore(layer, nearest=True).image
        x, y, w, h = FACE
        assert np.all(sensor[y + 4:y + h - 4, x + 4:x + w - 4] == FOREGROUND)
        assert np.all(sensor[:y - 4] == BACKGROUND)
        assert np.all(sensor[:, x + w + 4:] == BACKGROUND)

    def test_layer_matches_colour_chain(self, compositing_frame):
        """Test the layer lands where the colour frame's face pixels land."""
        colour = np.zeros((SENSOR_SIZE[1], SENSOR_SIZE[0]), dtype=np.uint8)
        x, y, w, h = FACE
        colour[y:y + h, x:x + w] = 255

        layer = face_protection_layer(FACE, SENSOR_SIZE, compositing_frame)
        carried = apply_frame(colour, compositing_frame, nearest=True)
        np.testing.assert_array_equal(layer.image, carried.image)

    def test_face_outside_frame(self, compositing_frame):
        assert face_protection_layer((1000, 1000, 50, 50), SENSOR_SIZE, compositing_frame) is None

    def test_idempotent(self, low_disparity, compositing_frame):
        mask = build_mask(low_disparity, compositing_frame)
        once = protect_face(mask, FACE, SENSOR_SIZE)
        twice = protect_face(once, FACE, SENSOR_SIZE)
        np.testing.assert_array_equal(once.image, twice.image)


class TestBuildMask:
    """Tests for the full mask build."""

    def test_below_threshold_all_background(self, low_disparity, compositing_frame):
        """Test low disparity with protection off gives an empty mask."""
        mask = build_mask(low_disparity, compositing_frame, face_bounds=FACE, has_face=True, protect=False)
        assert mask.frame == compositing_frame
        assert np.all(mask.image == BACKGROUND)

    def test_face_region_always_foreground(self, low_disparity, compositing_frame):
        mask = build_mask(low_disparity, compositing_frame, face_bounds=FACE, has_face=True)
        sensor = restore(mask, nearest=True).image
        x, y, w, h = FACE
        assert np.all(sensor[y + 4:y + h - 4, x + 4:x + w - 4] == FOREGROUND)
        assert np.count_nonzero(mask.image) < mask.image.size

    def test_no_face_flag(self, low_disparity, compositing_frame):
        """Test bounds without has_face are ignored."""
        mask = build_mask(low_disparity, compositing_frame, face_bounds=FACE, has_face=False)
        assert np.all(mask.image == BACKGROUND)

    def test_high_disparity_all_foreground(self, matching_frame, compositing_frame):
        width, height = matching_frame.transforms[-1].target_size
        disparity = TaggedImage(np.full((height, width), 200, dtype=np.uint8), matching_frame)
        mask = build_mask(disparity, compositing_frame)
        assert np.all(mask.image == FOREGROUND)

    def test_mask_conformed_with_flip(self, matching_frame, compositing_frame):
        """Test the disparity is mirrored into the compositing frame."""
        width, height = matching_frame.transforms[-1].target_size
        image = np.zeros((height, width), dtype=np.uint8)
        image[:, :10] = 255
        mask = build_mask(TaggedImage(image, matching_frame), compositing_frame)

        assert mask.size == (width, height)
        assert np.all(mask.image[:, -10:] == FOREGROUND)
        assert np.all(mask.image[:, :-10] == BACKGROUND)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
