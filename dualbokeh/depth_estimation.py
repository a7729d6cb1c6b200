"""
Depth Estimation Module
=======================

Estimates a filtered, normalized disparity map from a normal/wide lens
pair. The map is a proxy for depth used to separate foreground from
background, not a metric depth map.

Steps:
1. Rectify both frames when calibration is available, else use them raw
2. Downscale and rotate 90 degrees into the matching frame
3. Match normal->wide (left matcher) and wide->normal (right matcher)
4. Fuse both maps with an edge-aware WLS filter guided by the normal frame
5. Normalize to the full 8-bit range

References:
- Semi-Global Block Matching: H. Hirschmuller, "Stereo Processing by Semiglobal Matching
  and Mutual Information," IEEE TPAMI, 2008
- WLS disparity filtering: https://docs.opencv.org/4.x/d3/d14/tutorial_ximgproc_disparity_filtering.html
- OpenCV stereoRectify: https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html#ga617b1685d4059c6040827800e72ad2b6
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .config import DisparityConfig
from .exceptions import EngineFailureError
from .frames import TaggedImage, rotate_90, scale
from .geometry import CalibrationAvailable, CalibrationState, StereoGeometry
from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class DepthResult:
    """
    Output of one depth estimation run.

    Attributes:
        disparity: Filtered disparity, uint8 in [0, 255], tagged with the
            matching frame (scale -> rotate_90)
        primary: Normalized primary disparity map (matching frame)
        secondary: Normalized secondary disparity map (matching frame)
        rectified: Whether the rectified path was taken
        stages: Intermediate images keyed by stage name
        computation_time_ms: Wall time spent in estimate()
    """
    disparity: TaggedImage
    primary: np.ndarray
    secondary: np.ndarray
    rectified: bool
    stages: Dict[str, np.ndarray] = field(default_factory=dict)
    computation_time_ms: float = 0.0


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert BGR to single-channel, passing grayscale through."""
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def normalize_to_u8(disparity: np.ndarray) -> np.ndarray:
    """Stretch a disparity map to [0, 255] and convert to uint8."""
    return cv2.normalize(disparity, None, 0.0, 255.0, cv2.NORM_MINMAX, cv2.CV_8U)


class DepthEstimator:
    """
    Bidirectional SGBM matcher with WLS post-filtering.

    The matchers are built once per estimator from a DisparityConfig and
    reused for every shot.
    """

    def __init__(
        self,
        disparity_config: Optional[DisparityConfig] = None,
        downscale_factor: float = 0.5,
        invert_matcher: bool = False
    ):
        """
        Args:
            disparity_config: Matching and filtering parameters
            downscale_factor: Scale applied before matching
            invert_matcher: Treat the right matcher's map as primary
        """
        self.config = disparity_config or DisparityConfig()
        self.downscale_factor = downscale_factor
        self.invert_matcher = invert_matcher

        self.num_disparities = max(16, (self.config.num_disparities // 16) * 16)
        window = self.config.window_size
        self.window_size = window if window % 2 == 1 else window + 1

        self._init_matchers()

    def _init_matchers(self) -> None:
        """Create the left SGBM matcher and its right-view counterpart."""
        if not (hasattr(cv2, "ximgproc")
                and hasattr(cv2.ximgproc, "createRightMatcher")
                and hasattr(cv2.ximgproc, "createDisparityWLSFilter")):
            raise EngineFailureError(
                "init", "this cv2 build lacks ximgproc; install opencv-contrib-python"
            )

        p1, p2 = self.config.smoothness_penalties
        self.left_matcher = cv2.StereoSGBM_create(
            minDisparity=0,
            numDisparities=self.num_disparities,
            blockSize=self.window_size,
            P1=p1,
            P2=p2,
            disp12MaxDiff=self.config.max_disparity_diff,
            preFilterCap=self.config.prefilter_cap,
            uniquenessRatio=self.config.uniqueness_ratio,
            speckleWindowSize=self.config.speckle_window_size,
            speckleRange=self.config.speckle_range,
            mode=self.config.mode.cv_flag
        )
        self.right_matcher = cv2.ximgproc.createRightMatcher(self.left_matcher)

    def rectify(
        self,
        normal_gray: np.ndarray,
        wide_gray: np.ndarray,
        geometry: StereoGeometry
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Remap both frames into a common epipolar-aligned frame.

        Both outputs have the normal frame's size; the wide frame is
        sampled at its native resolution through its own remap table.
        """
        image_size = (normal_gray.shape[1], normal_gray.shape[0])
        try:
            R1, R2, P1, P2, Q, roi1, roi2 = cv2.stereoRectify(
                geometry.camera_matrix_normal,
                geometry.dist_coeffs_normal,
                geometry.camera_matrix_wide,
                geometry.dist_coeffs_wide,
                image_size,
                geometry.R,
                geometry.T,
                flags=cv2.CALIB_ZERO_DISPARITY,
                alpha=0
            )
            maps_normal = cv2.initUndistortRectifyMap(
                geometry.camera_matrix_normal, geometry.dist_coeffs_normal,
                R1, P1, image_size, cv2.CV_32FC1
            )
            maps_wide = cv2.initUndistortRectifyMap(
                geometry.camera_matrix_wide, geometry.dist_coeffs_wide,
                R2, P2, image_size, cv2.CV_32FC1
            )
            rectified_normal = cv2.remap(normal_gray, maps_normal[0], maps_normal[1], cv2.INTER_LINEAR)
            rectified_wide = cv2.remap(wide_gray, maps_wide[0], maps_wide[1], cv2.INTER_LINEAR)
        except cv2.error as e:
            raise EngineFailureError("rectify", str(e)) from e

        logger.debug("Rectified ROIs: normal=%s wide=%s", roi1, roi2)
        return rectified_normal, rectified_wide

    def compute_disparity(
        self,
        normal_work: np.ndarray,
        wide_work: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Match in both directions.

        Returns:
            (primary, secondary) raw 16-bit fixed-point disparity maps.
            Normally primary is normal->wide; invert_matcher swaps them.
        """
        try:
            left = self.left_matcher.compute(normal_work, wide_work)
            right = self.right_matcher.compute(wide_work, normal_work)
        except cv2.error as e:
            raise EngineFailureError("disparity", str(e)) from e

        for disparity in (left, right):
            if disparity is None or disparity.shape[:2] != normal_work.shape[:2]:
                raise EngineFailureError("disparity", "matcher returned a malformed map")

        if self.invert_matcher:
            return right, left
        return left, right

    def filter_disparity(
        self,
        primary: np.ndarray,
        secondary: np.ndarray,
        normal_work: np.ndarray,
        wide_work: np.ndarray
    ) -> np.ndarray:
        """Fuse both maps with the WLS filter, guided by the normal frame."""
        height, width = normal_work.shape[:2]
        try:
            wls = cv2.ximgproc.createDisparityWLSFilter(matcher_left=self.left_matcher)
            wls.setLambda(float(self.config.wls_lambda))
            wls.setSigmaColor(float(self.config.wls_sigma))
            filtered = wls.filter(
                primary,
                normal_work,
                disparity_map_right=secondary,
                ROI=(0, 0, width, height),
                right_view=wide_work
            )
        except cv2.error as e:
            raise EngineFailureError("wls_filter", str(e)) from e

        if filtered is None or filtered.shape[:2] != (height, width):
            raise EngineFailureError("wls_filter", "filter returned a malformed map")
        return filtered

    def estimate(
        self,
        normal_image: np.ndarray,
        wide_image: np.ndarray,
        calibration: CalibrationState
    ) -> DepthResult:
        """
        Run the full estimation for one shot.

        Args:
            normal_image: Normal lens frame (BGR or grayscale, sensor frame)
            wide_image: Wide lens frame (BGR or grayscale, sensor frame)
            calibration: Outcome of geometry.assess_calibration

        Raises:
            EngineFailureError: If any stereo engine call fails
        """
        start_time = time.perf_counter()
        stages: Dict[str, np.ndarray] = {}

        normal_gray = to_gray(normal_image)
        wide_gray = to_gray(wide_image)

        rectified = isinstance(calibration, CalibrationAvailable)
        if rectified:
            normal_gray, wide_gray = self.rectify(normal_gray, wide_gray, calibration.geometry)
            stages["rectified_normal_shot"] = normal_gray
            stages["rectified_wide_shot"] = wide_gray
        elif wide_gray.shape != normal_gray.shape:
            logger.debug("Resizing wide frame %s to normal frame %s", wide_gray.shape, normal_gray.shape)
            wide_gray = cv2.resize(
                wide_gray, (normal_gray.shape[1], normal_gray.shape[0]), interpolation=cv2.INTER_AREA
            )

        # Both frames share the sensor size from here on, so their tags match.
        normal_work = rotate_90(scale(TaggedImage(normal_gray), self.downscale_factor))
        wide_work = rotate_90(scale(TaggedImage(wide_gray), self.downscale_factor))

        primary, secondary = self.compute_disparity(normal_work.image, wide_work.image)
        primary_u8 = normalize_to_u8(primary)
        secondary_u8 = normalize_to_u8(secondary)
        stages["disparity_map"] = primary_u8
        stages["disparity_map_2"] = secondary_u8

        filtered = self.filter_disparity(primary, secondary, normal_work.image, wide_work.image)
        filtered_u8 = normalize_to_u8(filtered)
        stages["disparity_map_filtered_normalized"] = filtered_u8

        computation_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "Depth estimated in %.1f ms (%s path, frame %s)",
            computation_time_ms,
            "rectified" if rectified else "unrectified",
            normal_work.frame.describe()
        )

        return DepthResult(
            disparity=TaggedImage(filtered_u8, normal_work.frame),
            primary=primary_u8,
            secondary=secondary_u8,
            rectified=rectified,
            stages=stages,
            computation_time_ms=computation_time_ms
        )
