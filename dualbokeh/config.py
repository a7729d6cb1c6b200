"""
Configuration Module
====================

Per-lens calibration records and the flat settings surface that drives
the bokeh pipeline. Both can be loaded from and saved to JSON files.

Calibration values follow the Android camera2 conventions the metadata
is read from:
- LENS_INTRINSIC_CALIBRATION: [f_x, f_y, c_x, c_y, s]
- LENS_DISTORTION: [k1, k2, k3, p1, p2] (reordered for OpenCV in geometry.py)
- LENS_POSE_ROTATION: unit quaternion (x, y, z, w)
- LENS_POSE_TRANSLATION: [t_x, t_y, t_z] in meters

References:
- Android CameraCharacteristics: https://developer.android.com/reference/android/hardware/camera2/CameraCharacteristics
- OpenCV StereoSGBM: https://docs.opencv.org/4.x/d2/d85/classcv_1_1StereoSGBM.html
- OpenCV WLS filter: https://docs.opencv.org/4.x/d3/d14/tutorial_ximgproc_disparity_filtering.html
"""

import json
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Sequence

import cv2


class LensId(Enum):
    """Identity of one of the two rear lenses."""
    NORMAL = "normal"
    WIDE = "wide"


class MatchingMode(Enum):
    """
    Semi-global matching modes supported by the stereo engine.

    SGBM: 5-direction single-pass SGBM
    HH: full-scale 8-direction dynamic programming (memory hungry)
    SGBM_3WAY: 3-way cost aggregation, faster
    HH4: 4-direction variant, used by default
    """
    SGBM = "sgbm"
    HH = "hh"
    SGBM_3WAY = "sgbm_3way"
    HH4 = "hh4"

    @property
    def cv_flag(self) -> int:
        """OpenCV StereoSGBM mode constant."""
        return {
            MatchingMode.SGBM: cv2.STEREO_SGBM_MODE_SGBM,
            MatchingMode.HH: cv2.STEREO_SGBM_MODE_HH,
            MatchingMode.SGBM_3WAY: cv2.STEREO_SGBM_MODE_SGBM_3WAY,
            MatchingMode.HH4: cv2.STEREO_SGBM_MODE_HH4,
        }[self]


@dataclass(frozen=True)
class LensCalibration:
    """
    Calibration and per-shot metadata for one lens.

    Any geometric field can be None when the platform does not expose it;
    the pipeline then falls back to unrectified matching.

    Attributes:
        lens_id: Which lens this record belongs to
        intrinsics: [f_x, f_y, c_x, c_y, s]
        lens_distortion: Five distortion coefficients in platform order
        pose_rotation: Unit quaternion (x, y, z, w)
        pose_translation: Lens position (x, y, z)
        face_bounds: Detected face as (x, y, width, height) in sensor pixels
        has_face: Whether face_bounds holds a usable detection
    """
    lens_id: LensId
    intrinsics: Optional[Tuple[float, ...]] = None
    lens_distortion: Optional[Tuple[float, ...]] = None
    pose_rotation: Optional[Tuple[float, ...]] = None
    pose_translation: Optional[Tuple[float, ...]] = None
    face_bounds: Optional[Tuple[int, int, int, int]] = None
    has_face: bool = False

    @property
    def has_geometry(self) -> bool:
        """True when every field needed for rectification is present."""
        return None not in (
            self.intrinsics,
            self.lens_distortion,
            self.pose_rotation,
            self.pose_translation,
        )

    @property
    def focal_length(self) -> Optional[float]:
        """Horizontal focal length in pixels, if known."""
        return self.intrinsics[0] if self.intrinsics else None

    def with_face(self, face_bounds: Optional[Tuple[int, int, int, int]],
                  has_face: bool) -> "LensCalibration":
        """Return a copy carrying a new face detection result."""
        return replace(self, face_bounds=face_bounds, has_face=has_face)


@dataclass
class DisparityConfig:
    """
    Stereo matching and WLS filtering parameters.

    P1/P2 of None are derived from the window size the way OpenCV's
    samples do (8*w^2 and 32*w^2 for single-channel input).
    """
    window_size: int = 5
    num_disparities: int = 32
    p1: Optional[int] = None
    p2: Optional[int] = None
    max_disparity_diff: int = -1
    prefilter_cap: int = 63
    uniqueness_ratio: int = 0
    speckle_window_size: int = 100
    speckle_range: int = 32
    mode: MatchingMode = MatchingMode.HH4
    wls_lambda: float = 8000.0
    wls_sigma: float = 1.5

    @property
    def smoothness_penalties(self) -> Tuple[int, int]:
        """(P1, P2) with window-size defaults filled in."""
        area = self.window_size * self.window_size
        p1 = self.p1 if self.p1 is not None else 8 * area
        p2 = self.p2 if self.p2 is not None else 32 * area
        return p1, p2


@dataclass
class BokehSettings:
    """
    Flat, read-only settings surface for one run of the pipeline.

    Attributes:
        calibration_mode: Save raw shots instead of processing them
        save_intermediate: Persist every stage's output to output_dir
        show_intermediate: Collect stages for on-screen display
        sepia: Sepia background when True, monochrome when False
        invert_matcher: Treat the right-matcher disparity as primary
        downscale_factor: Working scale for matching and compositing
        mask_threshold: Filtered disparity at or above this is foreground
        protect_face: Force the detected face region into the foreground
        blur_radius: Background blur radius in working pixels
        required_rotation: Device display rotation in degrees (clockwise)
        portrait_scale: Working scale of the single-lens portrait
        output_dir: Directory for intermediates and calibration shots
        disparity: Stereo matching parameters
    """
    calibration_mode: bool = False
    save_intermediate: bool = False
    show_intermediate: bool = False
    sepia: bool = True
    invert_matcher: bool = False
    downscale_factor: float = 0.5
    mask_threshold: int = 128
    protect_face: bool = True
    blur_radius: int = 12
    required_rotation: int = 0
    portrait_scale: float = 0.5
    output_dir: str = "outputs"
    disparity: DisparityConfig = field(default_factory=DisparityConfig)


def _optional_tuple(data: dict, key: str, length: int, cast=float) -> Optional[tuple]:
    value = data.get(key)
    if value is None:
        return None
    if len(value) != length:
        raise ValueError(f"{key} must have {length} elements")
    return tuple(cast(v) for v in value)


def calibration_from_dict(data: dict) -> LensCalibration:
    """Build a LensCalibration from a JSON-style dictionary."""
    if "lens_id" not in data:
        raise ValueError("Missing required field in calibration: lens_id")
    try:
        lens_id = LensId(data["lens_id"])
    except ValueError:
        raise ValueError(f"Unknown lens_id: {data['lens_id']}")

    face_bounds = _optional_tuple(data, "face_bounds", 4, int)
    return LensCalibration(
        lens_id=lens_id,
        intrinsics=_optional_tuple(data, "intrinsics", 5),
        lens_distortion=_optional_tuple(data, "lens_distortion", 5),
        pose_rotation=_optional_tuple(data, "pose_rotation", 4),
        pose_translation=_optional_tuple(data, "pose_translation", 3),
        face_bounds=face_bounds,
        has_face=bool(data.get("has_face", face_bounds is not None)),
    )


def calibration_to_dict(calibration: LensCalibration) -> dict:
    """Inverse of calibration_from_dict."""
    def as_list(value):
        return list(value) if value is not None else None

    return {
        "lens_id": calibration.lens_id.value,
        "intrinsics": as_list(calibration.intrinsics),
        "lens_distortion": as_list(calibration.lens_distortion),
        "pose_rotation": as_list(calibration.pose_rotation),
        "pose_translation": as_list(calibration.pose_translation),
        "face_bounds": as_list(calibration.face_bounds),
        "has_face": calibration.has_face,
    }


def load_calibration_from_json(config_path: str) -> LensCalibration:
    """
    Load one lens's calibration from a JSON file.

    The JSON file contains lens_id ("normal" or "wide") and optionally
    intrinsics (5), lens_distortion (5), pose_rotation (4),
    pose_translation (3), face_bounds (4) and has_face.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a field is missing or has the wrong length
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Calibration file not found: {config_path}")

    with open(path, "r") as f:
        data = json.load(f)

    return calibration_from_dict(data)


def save_calibration_to_json(calibration: LensCalibration, output_path: str) -> None:
    """Save one lens's calibration to a JSON file."""
    with open(output_path, "w") as f:
        json.dump(calibration_to_dict(calibration), f, indent=4)


def create_default_calibration(
    lens_id: LensId,
    focal_length: float = 1000.0,
    principal_point: Tuple[float, float] = (320.0, 240.0),
    position: Sequence[float] = (0.0, 0.0, 0.0),
    rotation: Sequence[float] = (0.0, 0.0, 0.0, 1.0)
) -> LensCalibration:
    """
    Create an undistorted pinhole calibration.

    Useful for tests and when the platform exposes no metadata but the
    rig geometry is known.
    """
    return LensCalibration(
        lens_id=lens_id,
        intrinsics=(focal_length, focal_length, principal_point[0], principal_point[1], 0.0),
        lens_distortion=(0.0, 0.0, 0.0, 0.0, 0.0),
        pose_rotation=tuple(float(v) for v in rotation),
        pose_translation=tuple(float(v) for v in position),
    )


def settings_to_dict(settings: BokehSettings) -> dict:
    data = asdict(settings)
    data["disparity"]["mode"] = settings.disparity.mode.value
    return data


def settings_from_dict(data: dict) -> BokehSettings:
    """
    Build BokehSettings from a dictionary, keeping defaults for missing keys.

    Raises:
        ValueError: On unknown keys or out-of-range values
    """
    data = dict(data)
    disparity_data = dict(data.pop("disparity", {}) or {})

    known = set(BokehSettings.__dataclass_fields__) - {"disparity"}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    known_disparity = set(DisparityConfig.__dataclass_fields__)
    unknown = set(disparity_data) - known_disparity
    if unknown:
        raise ValueError(f"Unknown disparity settings: {', '.join(sorted(unknown))}")

    if "mode" in disparity_data:
        try:
            disparity_data["mode"] = MatchingMode(disparity_data["mode"])
        except ValueError:
            raise ValueError(f"Unknown matching mode: {disparity_data['mode']}")

    settings = BokehSettings(disparity=DisparityConfig(**disparity_data), **data)
    validate_settings(settings)
    return settings


def validate_settings(settings: BokehSettings) -> None:
    """Raise ValueError if a setting is outside its usable range."""
    if not 0.0 < settings.downscale_factor <= 1.0:
        raise ValueError("downscale_factor must be in (0, 1]")
    if not 0.0 < settings.portrait_scale <= 1.0:
        raise ValueError("portrait_scale must be in (0, 1]")
    if not 0 <= settings.mask_threshold <= 255:
        raise ValueError("mask_threshold must be in [0, 255]")
    if settings.blur_radius < 0:
        raise ValueError("blur_radius must be non-negative")
    if settings.required_rotation % 90 != 0:
        raise ValueError("required_rotation must be a multiple of 90 degrees")
    if settings.disparity.window_size < 1:
        raise ValueError("window_size must be positive")
    if settings.disparity.num_disparities < 1:
        raise ValueError("num_disparities must be positive")


def load_settings_from_json(config_path: str) -> BokehSettings:
    """
    Load pipeline settings from a JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file contains unknown or invalid settings
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {config_path}")

    with open(path, "r") as f:
        data = json.load(f)

    return settings_from_dict(data)


def save_settings_to_json(settings: BokehSettings, output_path: str) -> None:
    """Save pipeline settings to a JSON file."""
    with open(output_path, "w") as f:
        json.dump(settings_to_dict(settings), f, indent=4)
