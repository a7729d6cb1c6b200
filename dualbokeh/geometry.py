"""
Stereo Geometry Module
======================

Turns per-lens calibration metadata into the OpenCV camera matrices,
distortion vectors and relative pose consumed by stereo rectification.

Lens A is the normal lens and lens B the wide lens throughout: the
relative pose maps from the normal lens into the wide lens.

References:
- Android LENS_POSE_ROTATION: https://developer.android.com/reference/android/hardware/camera2/CameraCharacteristics#LENS_POSE_ROTATION
- Android LENS_INTRINSIC_CALIBRATION: https://developer.android.com/reference/android/hardware/camera2/CameraCharacteristics#LENS_INTRINSIC_CALIBRATION
- OpenCV camera model: https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html
"""

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import cv2
import numpy as np

from .config import LensCalibration
from .exceptions import GeometryDegeneracyError
from .logger import get_logger

logger = get_logger(__name__)

# Android reports [k1, k2, k3, p1, p2]; OpenCV expects [k1, k2, p1, p2, k3].
DISTORTION_ORDER = (0, 1, 3, 4, 2)

# Smallest acceptable ratio of smallest to largest singular value.
MIN_ROTATION_CONDITION = 1e-6

# Shortest usable baseline; stereoRectify needs a non-zero translation.
MIN_BASELINE = 1e-6


@dataclass(frozen=True)
class StereoGeometry:
    """
    Everything rectification needs to know about the two lenses.

    Attributes:
        camera_matrix_normal: 3x3 intrinsic matrix of the normal lens
        camera_matrix_wide: 3x3 intrinsic matrix of the wide lens
        dist_coeffs_normal: 5 OpenCV-ordered distortion coefficients
        dist_coeffs_wide: 5 OpenCV-ordered distortion coefficients
        R: 3x3 rotation from the normal lens to the wide lens
        T: 3x1 translation between the lenses
    """
    camera_matrix_normal: np.ndarray
    camera_matrix_wide: np.ndarray
    dist_coeffs_normal: np.ndarray
    dist_coeffs_wide: np.ndarray
    R: np.ndarray
    T: np.ndarray

    @property
    def baseline(self) -> float:
        """Distance between the two lens centers."""
        return float(np.linalg.norm(self.T))


@dataclass(frozen=True)
class CalibrationAvailable:
    """Both lenses carry usable metadata; take the rectified path."""
    geometry: StereoGeometry


@dataclass(frozen=True)
class CalibrationUnavailable:
    """Metadata is missing or degenerate; match the raw frames."""
    reason: str


CalibrationState = Union[CalibrationAvailable, CalibrationUnavailable]


def camera_matrix(intrinsics: Sequence[float]) -> np.ndarray:
    """
    Build the pinhole camera matrix from [f_x, f_y, c_x, c_y, s].

    K = [[f_x,   s, c_x],
         [  0, f_y, c_y],
         [  0,   0,   1]]
    """
    f_x, f_y, c_x, c_y, s = (float(v) for v in intrinsics)
    K = np.array([
        [f_x, s, c_x],
        [0.0, f_y, c_y],
        [0.0, 0.0, 1.0]
    ], dtype=np.float64)
    logger.debug("Camera matrix: %s", K.ravel().tolist())
    return K


def distortion_vector(lens_distortion: Sequence[float]) -> np.ndarray:
    """Reorder platform distortion coefficients into OpenCV order."""
    source = np.asarray(lens_distortion, dtype=np.float64).ravel()
    if source.size != 5:
        raise ValueError("lens_distortion must have 5 coefficients")
    dist = source[list(DISTORTION_ORDER)]
    logger.debug("Distortion vector: %s", dist.tolist())
    return dist


def rotation_from_quaternion(x: float, y: float, z: float, w: float) -> np.ndarray:
    """
    Rotation matrix for the unit quaternion (x, y, z, w).

    Reference: Android LENS_POSE_ROTATION documentation.
    """
    R = np.array([
        [1 - 2 * y * y - 2 * z * z, 2 * x * y - 2 * z * w, 2 * x * z + 2 * y * w],
        [2 * x * y + 2 * z * w, 1 - 2 * x * x - 2 * z * z, 2 * y * z - 2 * x * w],
        [2 * x * z - 2 * y * w, 2 * y * z + 2 * x * w, 1 - 2 * x * x - 2 * y * y]
    ], dtype=np.float64)
    logger.debug("Rotation matrix: %s", R.ravel().tolist())
    return R


def _svd_inverse(matrix: np.ndarray) -> np.ndarray:
    """
    Invert a 3x3 matrix through SVD.

    Raises:
        GeometryDegeneracyError: If the matrix is (nearly) singular
    """
    condition, inverse = cv2.invert(matrix, flags=cv2.DECOMP_SVD)
    if not np.isfinite(condition) or condition < MIN_ROTATION_CONDITION:
        raise GeometryDegeneracyError("Pose rotation is singular", condition=float(condition))
    return inverse


def relative_pose(
    pose_a: Tuple[np.ndarray, np.ndarray],
    pose_b: Tuple[np.ndarray, np.ndarray]
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Stereo extrinsics between two lenses from their individual poses.

    Each pose is (R, t) with R a 3x3 rotation and t a 3-vector.

    T[i] = -dot(row_i(R_A), t_A)  (lens A's translation in its own rotated frame)
    R = inverse(R_B) . R_A        (inverse via SVD; sensor rotations are
                                   not guaranteed to be perfectly orthonormal)

    Returns:
        (R, T) with T shaped 3x1
    """
    rotation_a, translation_a = (np.asarray(m, dtype=np.float64) for m in pose_a)
    rotation_b = np.asarray(pose_b[0], dtype=np.float64)
    translation_a = translation_a.ravel()

    T = np.array(
        [-np.dot(rotation_a[i], translation_a) for i in range(3)],
        dtype=np.float64
    ).reshape(3, 1)
    R = _svd_inverse(rotation_b) @ rotation_a

    logger.debug("Relative rotation: %s", R.ravel().tolist())
    logger.debug("Relative translation: %s", T.ravel().tolist())
    return R, T


def _check_finite(name: str, values: Sequence[float]) -> None:
    if not np.all(np.isfinite(np.asarray(values, dtype=np.float64))):
        raise GeometryDegeneracyError(f"{name} contains non-finite values")


def derive_stereo_geometry(normal: LensCalibration, wide: LensCalibration) -> StereoGeometry:
    """
    Build the full stereo geometry for a normal/wide lens pair.

    Raises:
        ValueError: If either lens lacks calibration metadata
        GeometryDegeneracyError: If the metadata is unusable
    """
    for calibration in (normal, wide):
        if not calibration.has_geometry:
            raise ValueError(f"{calibration.lens_id.value} lens has no pose/intrinsic metadata")
        _check_finite("intrinsics", calibration.intrinsics)
        _check_finite("lens_distortion", calibration.lens_distortion)
        _check_finite("pose_rotation", calibration.pose_rotation)
        _check_finite("pose_translation", calibration.pose_translation)
        if calibration.intrinsics[0] == 0 or calibration.intrinsics[1] == 0:
            raise GeometryDegeneracyError(f"{calibration.lens_id.value} lens has zero focal length")

    pose_normal = (rotation_from_quaternion(*normal.pose_rotation), np.asarray(normal.pose_translation))
    pose_wide = (rotation_from_quaternion(*wide.pose_rotation), np.asarray(wide.pose_translation))
    R, T = relative_pose(pose_normal, pose_wide)

    baseline = float(np.linalg.norm(T))
    if baseline < MIN_BASELINE:
        raise GeometryDegeneracyError(f"Relative translation is too short ({baseline:.3e})")

    return StereoGeometry(
        camera_matrix_normal=camera_matrix(normal.intrinsics),
        camera_matrix_wide=camera_matrix(wide.intrinsics),
        dist_coeffs_normal=distortion_vector(normal.lens_distortion),
        dist_coeffs_wide=distortion_vector(wide.lens_distortion),
        R=R,
        T=T,
    )


def assess_calibration(normal: LensCalibration, wide: LensCalibration) -> CalibrationState:
    """
    Decide once per shot whether the rectified path can be taken.

    Missing and degenerate metadata both yield CalibrationUnavailable;
    neither is an error for the shot as a whole.
    """
    if not normal.has_geometry or not wide.has_geometry:
        missing = [c.lens_id.value for c in (normal, wide) if not c.has_geometry]
        reason = f"no pose/intrinsic metadata for {', '.join(missing)} lens"
        logger.info("Calibration unavailable: %s", reason)
        return CalibrationUnavailable(reason)

    try:
        geometry = derive_stereo_geometry(normal, wide)
    except GeometryDegeneracyError as e:
        logger.warning("Falling back to unrectified matching: %s", e)
        return CalibrationUnavailable(str(e))

    logger.info("Calibration available, baseline %.4f", geometry.baseline)
    return CalibrationAvailable(geometry)
