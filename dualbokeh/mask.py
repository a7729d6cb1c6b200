"""
Mask Builder
============

Turns the filtered disparity map into a binary foreground mask
(255 = foreground, 0 = background) and forces a detected face into the
foreground.

The mask lives in the compositing frame, scale -> rotate_90 -> flip. The
face rectangle is drawn in the sensor frame of the normal lens and
carried through exactly the same chain, so it always lands on the face
in the colour image that is composited through the mask.
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from .frames import TaggedImage, CoordinateFrame, apply_frame, conform
from .logger import get_logger

logger = get_logger(__name__)

FOREGROUND = 255
BACKGROUND = 0


def hard_normalize(disparity: np.ndarray, threshold: int) -> np.ndarray:
    """
    Threshold a uint8 disparity map into a binary mask.

    Near objects have high disparity, so pixels at or above ``threshold``
    become foreground.
    """
    mask = np.where(disparity >= threshold, FOREGROUND, BACKGROUND)
    return mask.astype(np.uint8)


def clip_rect(
    rect: Tuple[int, int, int, int],
    size: Tuple[int, int]
) -> Optional[Tuple[int, int, int, int]]:
    """
    Clip (x, y, width, height) to an image of (width, height).

    Returns None if nothing of the rectangle remains.
    """
    x, y, w, h = (int(v) for v in rect)
    width, height = size
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(width, x + w), min(height, y + h)
    if x1 <= x0 or y1 <= y0:
        return None
    return (x0, y0, x1 - x0, y1 - y0)


def face_protection_layer(
    face_bounds: Tuple[int, int, int, int],
    sensor_size: Tuple[int, int],
    frame: CoordinateFrame
) -> Optional[TaggedImage]:
    """
    Opaque face rectangle on a transparent canvas, carried into ``frame``.

    Args:
        face_bounds: Face as (x, y, width, height) in sensor pixels
        sensor_size: (width, height) of the original normal frame
        frame: Target frame; must start from ``sensor_size``

    Returns:
        The protection layer, or None if the face lies outside the frame
    """
    rect = clip_rect(face_bounds, sensor_size)
    if rect is None:
        logger.warning("Face bounds %s lie outside the %s frame", face_bounds, sensor_size)
        return None

    canvas = np.zeros((sensor_size[1], sensor_size[0]), dtype=np.uint8)
    x, y, w, h = rect
    cv2.rectangle(canvas, (x, y), (x + w - 1, y + h - 1), FOREGROUND, thickness=-1)
    return apply_frame(canvas, frame, nearest=True)


def protect_face(
    mask: TaggedImage,
    face_bounds: Tuple[int, int, int, int],
    sensor_size: Tuple[int, int]
) -> TaggedImage:
    """Union the face rectangle into the mask. Applying it twice changes nothing."""
    layer = face_protection_layer(face_bounds, sensor_size, mask.frame)
    if layer is None:
        return mask
    return TaggedImage(np.maximum(mask.image, layer.image), mask.frame)


def build_mask(
    disparity: TaggedImage,
    target_frame: CoordinateFrame,
    threshold: int = 128,
    face_bounds: Optional[Tuple[int, int, int, int]] = None,
    has_face: bool = False,
    protect: bool = True
) -> TaggedImage:
    """
    Build the hard foreground mask for compositing.

    Args:
        disparity: Filtered uint8 disparity in the matching frame
        target_frame: Compositing frame; must share the disparity's sensor origin
        threshold: Foreground cutoff on the normalized disparity
        face_bounds: Face rectangle in the normal lens's sensor frame
        has_face: Whether face_bounds is a real detection
        protect: Force the face region into the foreground

    Returns:
        Binary uint8 mask tagged with ``target_frame``
    """
    hard = TaggedImage(hard_normalize(disparity.image, threshold), disparity.frame)
    mask = conform(hard, target_frame, nearest=True)
    logger.debug(
        "Hard mask %s in frame %s, %.1f%% foreground",
        mask.size, mask.frame.describe(), 100.0 * np.count_nonzero(mask.image) / mask.image.size
    )

    if protect and has_face and face_bounds is not None:
        logger.info("Protecting face region %s", face_bounds)
        mask = protect_face(mask, face_bounds, target_frame.sensor_size)

    return mask
