"""
Unit tests for face detection module.
"""

import pytest
import cv2
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from dualbokeh.config import LensCalibration, LensId
from dualbokeh.face_detection import NO_FACE, FaceDetector, FaceInfo


class TestFaceInfo:
    """Tests for FaceInfo."""

    def test_apply_to(self):
        calibration = LensCalibration(lens_id=LensId.NORMAL)
        face = FaceInfo(has_face=True, bounds=(5, 6, 7, 8))

        updated = face.apply_to(calibration)
        assert updated.has_face
        assert updated.face_bounds == (5, 6, 7, 8)

    def test_no_face(self):
        updated = NO_FACE.apply_to(LensCalibration(lens_id=LensId.WIDE))
        assert not updated.has_face
        assert updated.face_bounds is None


class TestFaceDetector:
    """Tests for FaceDetector class."""

    def test_default_cascade_loads(self):
        detector = FaceDetector()
        assert detector.cascade_path.endswith("haarcascade_frontalface_default.xml")

    def test_missing_cascade(self):
        with pytest.raises(FileNotFoundError):
            FaceDetector(cascade_path="/nonexistent/cascade.xml")

    def test_opencv_without_bundled_cascades(self, monkeypatch):
        """Test a wheel without cv2.data reports a missing cascade."""
        monkeypatch.delattr(cv2, "data", raising=False)
        with pytest.raises(FileNotFoundError):
            FaceDetector()

    def test_blank_image_has_no_face(self):
        """Test a uniform image yields no detection."""
        detector = FaceDetector()
        info = detector.detect(np.full((480, 640, 3), 127, dtype=np.uint8))
        assert info == NO_FACE

    def test_large_image_downscaled(self):
        detector = FaceDetector(detection_width=320)
        info = detector.detect(np.zeros((1080, 1920), dtype=np.uint8))
        assert not info.has_face


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
