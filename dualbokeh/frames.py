"""
Coordinate Frames
=================

Images in the pipeline leave the sensor frame through a chain of scale,
90-degree rotation and horizontal flip operations. Every working image
and mask carries that chain as a ``CoordinateFrame`` so it can be mapped
back to the sensor frame, or into another working frame, exactly.

Scaling records the size it started from, so inverting it restores the
original dimensions even when the scaled size was rounded.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import cv2
import numpy as np


class TransformKind(Enum):
    SCALE = "scale"
    ROTATE_90 = "rotate_90"
    FLIP_HORIZONTAL = "flip_horizontal"


@dataclass(frozen=True)
class FrameTransform:
    """
    One step of a transform chain.

    Attributes:
        kind: Which operation was applied
        source_size: (width, height) of the image before the operation
        factor: Scale factor (SCALE only)
    """
    kind: TransformKind
    source_size: Tuple[int, int]
    factor: float = 1.0

    @property
    def target_size(self) -> Tuple[int, int]:
        """(width, height) of the image after the operation."""
        width, height = self.source_size
        if self.kind == TransformKind.SCALE:
            return scaled_size(self.source_size, self.factor)
        if self.kind == TransformKind.ROTATE_90:
            return (height, width)
        return (width, height)


@dataclass(frozen=True)
class CoordinateFrame:
    """An ordered chain of transforms starting at the sensor frame."""
    transforms: Tuple[FrameTransform, ...] = ()

    @property
    def is_sensor_frame(self) -> bool:
        return not self.transforms

    @property
    def sensor_size(self) -> Optional[Tuple[int, int]]:
        """(width, height) of the sensor image this frame started from."""
        return self.transforms[0].source_size if self.transforms else None

    def then(self, transform: FrameTransform) -> "CoordinateFrame":
        return CoordinateFrame(self.transforms + (transform,))

    def describe(self) -> str:
        if not self.transforms:
            return "sensor"
        parts = []
        for t in self.transforms:
            parts.append(f"scale({t.factor:g})" if t.kind == TransformKind.SCALE else t.kind.value)
        return " -> ".join(parts)


SENSOR_FRAME = CoordinateFrame()


@dataclass
class TaggedImage:
    """An image together with the coordinate frame it lives in."""
    image: np.ndarray
    frame: CoordinateFrame = field(default_factory=CoordinateFrame)

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return (self.image.shape[1], self.image.shape[0])


def scaled_size(size: Tuple[int, int], factor: float) -> Tuple[int, int]:
    """Size after scaling, rounded and never smaller than one pixel."""
    width, height = size
    return (max(1, int(round(width * factor))), max(1, int(round(height * factor))))


def _resize(image: np.ndarray, size: Tuple[int, int], nearest: bool, shrinking: bool) -> np.ndarray:
    if nearest:
        interpolation = cv2.INTER_NEAREST
    elif shrinking:
        interpolation = cv2.INTER_AREA
    else:
        interpolation = cv2.INTER_LINEAR
    return cv2.resize(image, size, interpolation=interpolation)


def _apply(image: np.ndarray, transform: FrameTransform, nearest: bool) -> np.ndarray:
    if transform.kind == TransformKind.SCALE:
        return _resize(image, transform.target_size, nearest, transform.factor < 1.0)
    if transform.kind == TransformKind.ROTATE_90:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    return cv2.flip(image, 1)


def _invert(image: np.ndarray, transform: FrameTransform, nearest: bool) -> np.ndarray:
    if transform.kind == TransformKind.SCALE:
        return _resize(image, transform.source_size, nearest, transform.factor > 1.0)
    if transform.kind == TransformKind.ROTATE_90:
        return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)
    return cv2.flip(image, 1)


def scale(tagged: TaggedImage, factor: float, nearest: bool = False) -> TaggedImage:
    """Scale by ``factor`` and record it."""
    transform = FrameTransform(TransformKind.SCALE, tagged.size, factor)
    return TaggedImage(_apply(tagged.image, transform, nearest), tagged.frame.then(transform))


def rotate_90(tagged: TaggedImage) -> TaggedImage:
    """Rotate 90 degrees clockwise and record it."""
    transform = FrameTransform(TransformKind.ROTATE_90, tagged.size)
    return TaggedImage(_apply(tagged.image, transform, False), tagged.frame.then(transform))


def flip_horizontal(tagged: TaggedImage) -> TaggedImage:
    """Mirror left/right and record it."""
    transform = FrameTransform(TransformKind.FLIP_HORIZONTAL, tagged.size)
    return TaggedImage(_apply(tagged.image, transform, False), tagged.frame.then(transform))


def apply_frame(image: np.ndarray, frame: CoordinateFrame, nearest: bool = False) -> TaggedImage:
    """
    Carry a sensor-frame image into ``frame``.

    Raises:
        ValueError: If the image is not the size the frame starts from
    """
    size = (image.shape[1], image.shape[0])
    if frame.sensor_size is not None and size != frame.sensor_size:
        raise ValueError(f"Image size {size} does not match frame origin {frame.sensor_size}")
    for transform in frame.transforms:
        image = _apply(image, transform, nearest)
    return TaggedImage(image, frame)


def restore(tagged: TaggedImage, nearest: bool = False) -> TaggedImage:
    """Undo the whole chain, returning the image in the sensor frame."""
    image = tagged.image
    for transform in reversed(tagged.frame.transforms):
        image = _invert(image, transform, nearest)
    return TaggedImage(image, SENSOR_FRAME)


def conform(tagged: TaggedImage, target: CoordinateFrame, nearest: bool = False) -> TaggedImage:
    """
    Map an image from its frame into ``target``.

    Only the transforms after the longest shared prefix are undone and
    re-applied, so no resolution is lost on the shared part.
    """
    source = tagged.frame.transforms
    shared = 0
    for a, b in zip(source, target.transforms):
        if a != b:
            break
        shared += 1

    image = tagged.image
    for transform in reversed(source[shared:]):
        image = _invert(image, transform, nearest)
    for transform in target.transforms[shared:]:
        image = _apply(image, transform, nearest)
    return TaggedImage(image, target)


def working_frame(sensor_size: Tuple[int, int], factor: float, flip: bool = False) -> CoordinateFrame:
    """
    The pipeline's working frame: scale(factor) -> rotate_90 [-> flip].

    Args:
        sensor_size: (width, height) of the sensor-frame image
        factor: Downscale factor
        flip: Append a horizontal flip (the compositing frame)
    """
    frame = CoordinateFrame()
    transform = FrameTransform(TransformKind.SCALE, tuple(sensor_size), factor)
    frame = frame.then(transform)
    transform = FrameTransform(TransformKind.ROTATE_90, transform.target_size)
    frame = frame.then(transform)
    if flip:
        frame = frame.then(FrameTransform(TransformKind.FLIP_HORIZONTAL, transform.target_size))
    return frame
