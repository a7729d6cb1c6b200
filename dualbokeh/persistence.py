"""
Intermediate Image Persistence
==============================

Best-effort writer for pipeline stages and calibration shots. Saving is a
diagnostic convenience: failures are logged and never interrupt the
pipeline, and nothing is retried.
"""

import time
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from .logger import get_logger

logger = get_logger(__name__)


class IntermediateWriter:
    """
    Writes images named by stage into an output directory.

    A disabled writer accepts every call and writes nothing.
    """

    def __init__(self, output_dir: Union[str, Path], enabled: bool = True,
                 extension: str = ".jpg", jpeg_quality: int = 90):
        self.output_dir = Path(output_dir)
        self.enabled = enabled
        self.extension = extension
        self.jpeg_quality = jpeg_quality

    def path_for(self, stage: str, timestamp: Optional[float] = None) -> Path:
        name = stage if timestamp is None else f"{stage}_{int(timestamp * 1000)}"
        return self.output_dir / f"{name}{self.extension}"

    def save(self, stage: str, image: np.ndarray, with_timestamp: bool = False) -> Optional[Path]:
        """
        Write one stage image.

        Returns:
            The written path, or None if disabled or the write failed
        """
        if not self.enabled:
            return None

        path = self.path_for(stage, time.time() if with_timestamp else None)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            ok = cv2.imwrite(str(path), image, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        except (OSError, cv2.error) as e:
            logger.warning("Could not save %s to %s: %s", stage, path, e)
            return None

        if not ok:
            logger.warning("Could not save %s to %s", stage, path)
            return None

        logger.debug("Saved %s", path)
        return path
