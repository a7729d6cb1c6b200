"""
Compositing Module
==================

Background stylization and final image assembly.

Dual-lens shots: the normal lens colour frame is carried into the mask's
frame, a sepia or monochrome copy is blurred to fake defocus, the sharp
frame is pasted back through the mask, and the chain is undone so the
result comes out at sensor resolution in display orientation.

Single-lens shots: the face crop is feathered and pasted onto a stylized,
blurred copy of the frame.

References:
- Sepia tone matrix: https://docs.microsoft.com/en-us/previous-versions/windows/desktop/direct2d/sepia-effect
- OpenCV GaussianBlur: https://docs.opencv.org/4.x/d4/d86/group__imgproc__filter.html
"""

from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .config import BokehSettings
from .frames import TaggedImage, apply_frame, restore, scaled_size
from .logger import get_logger
from .mask import clip_rect

logger = get_logger(__name__)

# Rows produce B, G, R from (B, G, R) input.
SEPIA_KERNEL = np.array([
    [0.131, 0.534, 0.272],
    [0.168, 0.686, 0.349],
    [0.189, 0.769, 0.393]
], dtype=np.float32)

_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


def ensure_bgr(image: np.ndarray) -> np.ndarray:
    """Promote grayscale or BGRA images to 3-channel BGR."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image


def sepia_filter(image: np.ndarray) -> np.ndarray:
    return cv2.transform(ensure_bgr(image), SEPIA_KERNEL)


def mono_filter(image: np.ndarray) -> np.ndarray:
    gray = cv2.cvtColor(ensure_bgr(image), cv2.COLOR_BGR2GRAY)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def blur(image: np.ndarray, radius: int) -> np.ndarray:
    """Gaussian blur with a (2 * radius + 1) kernel; radius 0 is a copy."""
    if radius <= 0:
        return image.copy()
    ksize = 2 * int(radius) + 1
    return cv2.GaussianBlur(image, (ksize, ksize), 0)


def stylize_background(image: np.ndarray, sepia: bool, blur_radius: int) -> np.ndarray:
    """Sepia or mono tone followed by blur."""
    toned = sepia_filter(image) if sepia else mono_filter(image)
    return blur(toned, blur_radius)


def apply_mask(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Keep ``image`` where the mask is foreground, black elsewhere."""
    return np.where(mask[..., None] > 0, image, 0).astype(image.dtype)


def composite(background: np.ndarray, foreground: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Stencil composite: foreground where the mask is set, background elsewhere."""
    if background.shape != foreground.shape or mask.shape != background.shape[:2]:
        raise ValueError(
            f"Shape mismatch: background {background.shape}, "
            f"foreground {foreground.shape}, mask {mask.shape}"
        )
    return np.where(mask[..., None] > 0, foreground, background).astype(background.dtype)


def orient(image: np.ndarray, degrees: int) -> np.ndarray:
    """Rotate clockwise by a multiple of 90 degrees."""
    degrees = int(degrees) % 360
    if degrees == 0:
        return image
    if degrees not in _ROTATIONS:
        raise ValueError(f"Rotation must be a multiple of 90 degrees, got {degrees}")
    return cv2.rotate(image, _ROTATIONS[degrees])


def composite_bokeh(
    color_image: np.ndarray,
    mask: TaggedImage,
    settings: BokehSettings
) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
    """
    Render the final dual-lens bokeh image.

    Args:
        color_image: Normal lens colour frame in the sensor frame
        mask: Hard mask tagged with its compositing frame
        settings: Style, blur and orientation settings

    Returns:
        (final image in sensor resolution and display orientation,
         intermediate stages keyed by name)
    """
    foreground = apply_frame(ensure_bgr(color_image), mask.frame)
    masked_colour = apply_mask(foreground.image, mask.image)
    background = stylize_background(foreground.image, settings.sepia, settings.blur_radius)

    final_work = TaggedImage(composite(background, foreground.image, mask.image), mask.frame)
    final_image = orient(restore(final_work).image, settings.required_rotation)

    logger.debug("Composited %s -> %s", mask.frame.describe(), final_image.shape)
    stages = {
        "masked_colour": masked_colour,
        "background": background,
        "final_image": final_work.image,
    }
    return final_image, stages


def crop(image: np.ndarray, rect: Tuple[int, int, int, int]) -> Optional[np.ndarray]:
    """Crop (x, y, width, height), clipped to the image. None if empty."""
    clipped = clip_rect(rect, (image.shape[1], image.shape[0]))
    if clipped is None:
        return None
    x, y, w, h = clipped
    return image[y:y + h, x:x + w].copy()


def feather_alpha(size: Tuple[int, int], border_fraction: float = 0.15) -> np.ndarray:
    """
    Alpha map in [0, 1] that ramps up from each edge.

    The ramp width is ``border_fraction`` of the shorter side.
    """
    width, height = size
    border = max(1.0, min(width, height) * border_fraction)
    xs = np.arange(width, dtype=np.float32)
    ys = np.arange(height, dtype=np.float32)
    dx = np.minimum(xs, width - 1 - xs)
    dy = np.minimum(ys, height - 1 - ys)
    distance = np.minimum(dx[None, :], dy[:, None])
    return np.clip(distance / border, 0.0, 1.0)


def paste_with_alpha(
    background: np.ndarray,
    foreground: np.ndarray,
    alpha: np.ndarray,
    top_left: Tuple[int, int]
) -> np.ndarray:
    """Alpha-blend ``foreground`` onto a copy of ``background`` at (x, y)."""
    result = background.copy()
    x, y = top_left
    h, w = foreground.shape[:2]
    region = clip_rect((x, y, w, h), (background.shape[1], background.shape[0]))
    if region is None:
        return result

    rx, ry, rw, rh = region
    fx, fy = rx - x, ry - y
    fg = foreground[fy:fy + rh, fx:fx + rw].astype(np.float32)
    a = alpha[fy:fy + rh, fx:fx + rw, None]
    bg = result[ry:ry + rh, rx:rx + rw].astype(np.float32)
    result[ry:ry + rh, rx:rx + rw] = np.clip(a * fg + (1.0 - a) * bg, 0, 255).astype(result.dtype)
    return result


def render_single_lens_portrait(
    image: np.ndarray,
    settings: BokehSettings,
    face_bounds: Optional[Tuple[int, int, int, int]] = None,
    has_face: bool = False,
    is_front: bool = False
) -> np.ndarray:
    """
    Portrait effect from a single frame: sharp feathered face over a
    stylized, blurred background. Without a face only the background is
    returned.

    The output is at ``settings.portrait_scale`` of the input, rotated by
    ``settings.required_rotation`` and mirrored for front-facing lenses.
    """
    image = ensure_bgr(image)
    factor = settings.portrait_scale
    size = scaled_size((image.shape[1], image.shape[0]), factor)
    small = cv2.resize(image, size, interpolation=cv2.INTER_AREA)
    result = stylize_background(small, settings.sepia, settings.blur_radius)

    face = crop(image, face_bounds) if has_face and face_bounds is not None else None
    if face is not None:
        face_size = scaled_size((face.shape[1], face.shape[0]), factor)
        face = cv2.resize(face, face_size, interpolation=cv2.INTER_AREA)
        x, y = max(0, face_bounds[0]), max(0, face_bounds[1])
        top_left = (int(round(x * factor)), int(round(y * factor)))
        result = paste_with_alpha(result, face, feather_alpha(face_size), top_left)
    else:
        logger.info("No face detected, returning background only")

    result = orient(result, settings.required_rotation)
    if is_front:
        result = cv2.flip(result, 1)
    return result
