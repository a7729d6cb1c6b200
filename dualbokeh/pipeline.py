"""
Bokeh Pipeline
==============

Runs one shot through the full dual-lens pipeline:

    calibration check -> depth estimation -> mask -> composite

Also handles calibration mode (raw shots saved, nothing processed) and
the single-lens portrait path. Stage images are written to disk when
save-intermediate is on and collected on the result when
show-intermediate is on.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

import numpy as np

from .compositing import composite_bokeh, render_single_lens_portrait
from .config import BokehSettings, LensCalibration, validate_settings
from .depth_estimation import DepthEstimator
from .frames import working_frame
from .geometry import CalibrationAvailable, assess_calibration
from .logger import get_logger
from .mask import build_mask
from .persistence import IntermediateWriter

logger = get_logger(__name__)

PLACEHOLDER_SIZE = (100, 100)


class ShotStatus(Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    CALIBRATION = "calibration"
    FAILED = "failed"
    DROPPED = "dropped"


def placeholder_image() -> np.ndarray:
    """Black image returned when a shot cannot be processed."""
    width, height = PLACEHOLDER_SIZE
    return np.zeros((height, width, 3), dtype=np.uint8)


@dataclass
class BokehResult:
    """
    Outcome of one shot.

    Attributes:
        status: How the shot ended
        image: Final image in sensor resolution and display orientation,
            or the placeholder when the shot did not complete
        fallback: Unprocessed normal frame, for display when the shot failed
        stages: Intermediate images, collected when show-intermediate is on
        rectified: Whether the rectified path was taken
        computation_time_ms: Wall time of the run
        error: Failure description for FAILED shots
    """
    status: ShotStatus
    image: np.ndarray
    fallback: Optional[np.ndarray] = None
    stages: Dict[str, np.ndarray] = field(default_factory=dict)
    rectified: bool = False
    computation_time_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (ShotStatus.COMPLETE, ShotStatus.CALIBRATION)


class BokehPipeline:
    """
    Per-shot orchestration of the depth and compositing stages.

    The stereo matchers are created once and reused for every shot.
    """

    def __init__(self, settings: Optional[BokehSettings] = None,
                 writer: Optional[IntermediateWriter] = None):
        self.settings = settings or BokehSettings()
        validate_settings(self.settings)

        if writer is None:
            writer = IntermediateWriter(
                self.settings.output_dir,
                enabled=self.settings.save_intermediate or self.settings.calibration_mode
            )
        self.writer = writer
        self._estimator: Optional[DepthEstimator] = None

    @property
    def estimator(self) -> DepthEstimator:
        if self._estimator is None:
            self._estimator = DepthEstimator(
                self.settings.disparity,
                downscale_factor=self.settings.downscale_factor,
                invert_matcher=self.settings.invert_matcher
            )
        return self._estimator

    def _emit(self, stages: Dict[str, np.ndarray], name: str, image: np.ndarray) -> None:
        if self.settings.save_intermediate:
            self.writer.save(name, image)
        if self.settings.show_intermediate:
            stages[name] = image

    def process(self, shot) -> BokehResult:
        """
        Process a completed shot pair.

        Args:
            shot: A detached ShotPair

        Returns:
            BokehResult; INCOMPLETE with a placeholder if either frame or
            calibration is missing

        Raises:
            EngineFailureError: If the stereo engine fails
        """
        normal_frame, wide_frame = shot.normal_frame, shot.wide_frame
        normal_cal, wide_cal = shot.normal_calibration, shot.wide_calibration

        if not shot.is_complete() or normal_cal is None or wide_cal is None:
            logger.warning("Shot is incomplete, returning placeholder")
            return BokehResult(
                status=ShotStatus.INCOMPLETE,
                image=placeholder_image(),
                fallback=normal_frame.image.copy() if normal_frame is not None else None
            )

        if self.settings.calibration_mode:
            return self._save_calibration_shots(normal_frame.image, wide_frame.image)

        return self.run(normal_frame.image, wide_frame.image, normal_cal, wide_cal)

    def _save_calibration_shots(self, normal_image: np.ndarray, wide_image: np.ndarray) -> BokehResult:
        logger.info("Calibration mode: saving raw shots")
        self.writer.save("normal_calibration", normal_image, with_timestamp=True)
        self.writer.save("wide_calibration", wide_image, with_timestamp=True)
        return BokehResult(status=ShotStatus.CALIBRATION, image=normal_image.copy(), fallback=normal_image.copy())

    def run(
        self,
        normal_image: np.ndarray,
        wide_image: np.ndarray,
        normal_calibration: LensCalibration,
        wide_calibration: LensCalibration
    ) -> BokehResult:
        """Run depth, mask and composite on raw sensor-frame images."""
        start_time = time.perf_counter()
        stages: Dict[str, np.ndarray] = {}
        self._emit(stages, "normal_shot", normal_image.copy())
        self._emit(stages, "wide_shot", wide_image.copy())

        calibration = assess_calibration(normal_calibration, wide_calibration)
        depth = self.estimator.estimate(normal_image, wide_image, calibration)
        for name, image in depth.stages.items():
            self._emit(stages, name, image)

        sensor_size = (normal_image.shape[1], normal_image.shape[0])
        target_frame = working_frame(sensor_size, self.settings.downscale_factor, flip=True)
        mask = build_mask(
            depth.disparity,
            target_frame,
            threshold=self.settings.mask_threshold,
            face_bounds=normal_calibration.face_bounds,
            has_face=normal_calibration.has_face,
            protect=self.settings.protect_face
        )
        self._emit(stages, "hard_mask", mask.image)

        final_image, composite_stages = composite_bokeh(normal_image, mask, self.settings)
        for name, image in composite_stages.items():
            self._emit(stages, name, image)

        computation_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info("Bokeh shot complete in %.1f ms", computation_time_ms)

        return BokehResult(
            status=ShotStatus.COMPLETE,
            image=final_image,
            fallback=normal_image.copy(),
            stages=stages,
            rectified=isinstance(calibration, CalibrationAvailable),
            computation_time_ms=computation_time_ms
        )

    def process_single(self, frame, calibration: Optional[LensCalibration] = None,
                       is_front: bool = False) -> BokehResult:
        """Render a single-lens portrait from one captured frame."""
        start_time = time.perf_counter()
        face_bounds = calibration.face_bounds if calibration is not None else None
        has_face = calibration.has_face if calibration is not None else False

        image = render_single_lens_portrait(
            frame.image,
            self.settings,
            face_bounds=face_bounds,
            has_face=has_face,
            is_front=is_front
        )
        if self.settings.save_intermediate:
            self.writer.save("final_image", image)

        computation_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info("Single-lens portrait complete in %.1f ms", computation_time_ms)
        return BokehResult(
            status=ShotStatus.COMPLETE,
            image=image,
            fallback=frame.image.copy(),
            computation_time_ms=computation_time_ms
        )
