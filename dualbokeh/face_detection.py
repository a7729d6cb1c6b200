"""
Face Detection Module
=====================

Supplies the face bounding box the mask builder protects. On a phone the
camera reports faces with each capture; offline, a Haar cascade fills the
same role.

References:
- OpenCV face detection: https://docs.opencv.org/4.x/db/d28/tutorial_cascade_classifier.html
- P. Viola and M. Jones, "Rapid Object Detection using a Boosted Cascade of
  Simple Features," CVPR 2001
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import LensCalibration
from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_CASCADE = "haarcascade_frontalface_default.xml"


@dataclass(frozen=True)
class FaceInfo:
    """
    Face detection result for one shot.

    Attributes:
        has_face: Whether a face was found
        bounds: (x, y, width, height) in sensor pixels
        confidence: Cascade level weight of the detection
    """
    has_face: bool
    bounds: Optional[Tuple[int, int, int, int]] = None
    confidence: float = 0.0

    def apply_to(self, calibration: LensCalibration) -> LensCalibration:
        """Copy of ``calibration`` carrying this detection."""
        return calibration.with_face(self.bounds, self.has_face)


NO_FACE = FaceInfo(has_face=False)


def default_cascade_path() -> str:
    """
    Frontal face cascade bundled with the OpenCV wheel.

    Raises:
        FileNotFoundError: If the installed OpenCV ships no cascades
    """
    data = getattr(cv2, "data", None)
    if data is None:
        raise FileNotFoundError("This OpenCV build bundles no Haar cascades; pass cascade_path")
    return str(Path(data.haarcascades) / DEFAULT_CASCADE)


class FaceDetector:
    """
    Largest-face detector built on an OpenCV Haar cascade.

    Detection runs on a downscaled grayscale copy for speed; bounds are
    reported in the input image's pixels.
    """

    def __init__(
        self,
        cascade_path: Optional[str] = None,
        detection_width: int = 640,
        min_neighbors: int = 5,
        min_size: int = 30
    ):
        """
        Args:
            cascade_path: Cascade XML file (defaults to OpenCV's frontal face)
            detection_width: Width the image is scaled to before detection
            min_neighbors: Detections needed to keep a candidate
            min_size: Smallest face side in detection pixels
        """
        if cascade_path is None:
            cascade_path = default_cascade_path()
        self.cascade_path = cascade_path
        self.detection_width = detection_width
        self.min_neighbors = min_neighbors
        self.min_size = min_size

        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            raise FileNotFoundError(f"Could not load face cascade: {cascade_path}")

    def detect(self, image: np.ndarray) -> FaceInfo:
        """Detect the largest face in a BGR or grayscale image."""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image

        scale = min(1.0, self.detection_width / float(gray.shape[1]))
        if scale < 1.0:
            gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)
        gray = cv2.equalizeHist(gray)

        faces, _, weights = self._cascade.detectMultiScale3(
            gray,
            scaleFactor=1.1,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_size, self.min_size),
            outputRejectLevels=True
        )
        if len(faces) == 0:
            logger.debug("No face found")
            return NO_FACE

        areas = [w * h for (_, _, w, h) in faces]
        best = int(np.argmax(areas))
        x, y, w, h = (int(round(v / scale)) for v in faces[best])
        confidence = float(np.ravel(weights)[best]) if len(weights) else 0.0

        logger.info("Face found at %s", (x, y, w, h))
        return FaceInfo(has_face=True, bounds=(x, y, w, h), confidence=confidence)
