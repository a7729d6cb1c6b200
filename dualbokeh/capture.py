"""
Capture Rendezvous
==================

The two lenses deliver their frames and capture metadata asynchronously
and in any order. The rendezvous collects them into a ShotPair and, once
both lenses are done and both frames are present, hands the pair to the
pipeline on a single background worker.

Rules:
- The pair fires exactly once; it is detached and reset at dispatch
- Only one run is in flight; a pair completing meanwhile is dropped
- Frames are closed once the run ends, whether it succeeded or failed
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from .config import LensCalibration, LensId
from .exceptions import BokehError
from .logger import get_logger
from .pipeline import BokehResult, ShotStatus, placeholder_image

logger = get_logger(__name__)


class CapturedFrame:
    """
    A frame buffer delivered by one lens.

    ``close()`` releases the buffer exactly once; further calls do nothing.
    """

    def __init__(self, lens_id: LensId, image: np.ndarray, timestamp: Optional[float] = None,
                 on_close: Optional[Callable[["CapturedFrame"], None]] = None):
        self.lens_id = lens_id
        self.image = image
        self.timestamp = time.time() if timestamp is None else timestamp
        self._on_close = on_close
        self._closed = False

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        if self.image is None:
            return (0, 0)
        return (self.image.shape[1], self.image.shape[0])

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.image = None
        if self._on_close is not None:
            self._on_close(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        state = "closed" if self._closed else f"{self.size[0]}x{self.size[1]}"
        return f"CapturedFrame({self.lens_id.value}, {state})"


@dataclass
class ShotPair:
    """Rendezvous state for one shot."""
    normal_done: bool = False
    wide_done: bool = False
    normal_frame: Optional[CapturedFrame] = None
    wide_frame: Optional[CapturedFrame] = None
    normal_calibration: Optional[LensCalibration] = None
    wide_calibration: Optional[LensCalibration] = None
    is_two_lens_shot: bool = True

    def frame_for(self, lens_id: LensId) -> Optional[CapturedFrame]:
        return self.normal_frame if lens_id == LensId.NORMAL else self.wide_frame

    def calibration_for(self, lens_id: LensId) -> Optional[LensCalibration]:
        return self.normal_calibration if lens_id == LensId.NORMAL else self.wide_calibration

    def set_frame(self, lens_id: LensId, frame: CapturedFrame) -> None:
        """Store a frame, closing any frame it replaces."""
        previous = self.frame_for(lens_id)
        if previous is not None and previous is not frame:
            previous.close()
        if lens_id == LensId.NORMAL:
            self.normal_frame = frame
        else:
            self.wide_frame = frame

    def set_calibration(self, lens_id: LensId, calibration: LensCalibration) -> None:
        if lens_id == LensId.NORMAL:
            self.normal_calibration = calibration
        else:
            self.wide_calibration = calibration

    def mark_done(self, lens_id: LensId) -> None:
        if lens_id == LensId.NORMAL:
            self.normal_done = True
        else:
            self.wide_done = True

    def is_complete(self) -> bool:
        """Both lenses done and both frames present."""
        return (self.normal_done and self.wide_done
                and self.normal_frame is not None and self.wide_frame is not None)

    def detach(self) -> "ShotPair":
        """Snapshot the current state and reset this pair for the next shot."""
        snapshot = ShotPair(
            normal_done=self.normal_done,
            wide_done=self.wide_done,
            normal_frame=self.normal_frame,
            wide_frame=self.wide_frame,
            normal_calibration=self.normal_calibration,
            wide_calibration=self.wide_calibration,
            is_two_lens_shot=self.is_two_lens_shot
        )
        self.reset(self.is_two_lens_shot)
        return snapshot

    def reset(self, is_two_lens_shot: bool = True) -> None:
        self.normal_done = False
        self.wide_done = False
        self.normal_frame = None
        self.wide_frame = None
        self.normal_calibration = None
        self.wide_calibration = None
        self.is_two_lens_shot = is_two_lens_shot

    def close_frames(self) -> None:
        for frame in (self.normal_frame, self.wide_frame):
            if frame is not None:
                frame.close()


def _finished(result: BokehResult) -> Future:
    future = Future()
    future.set_result(result)
    return future


class CaptureRendezvous:
    """
    Collects lens deliveries and triggers the pipeline once per shot.

    Callbacks may be invoked from any thread. The pipeline always runs on
    the rendezvous's own worker thread, never on the caller's.
    """

    def __init__(self, pipeline, on_result: Optional[Callable[[BokehResult], None]] = None,
                 single_lens: LensId = LensId.WIDE, is_front: bool = False):
        """
        Args:
            pipeline: Object with process(shot) and process_single(frame, calibration, is_front)
            on_result: Called on the worker thread with every finished result
            single_lens: Lens whose frame is rendered for single-lens shots
            is_front: Whether the single lens faces the user (output mirrored)
        """
        self.pipeline = pipeline
        self.on_result = on_result
        self.single_lens = single_lens
        self.is_front = is_front

        self._lock = threading.Lock()
        self._shot = ShotPair()
        self._in_flight = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bokeh")

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    def begin_shot(self, is_two_lens_shot: bool = True) -> None:
        """Start a new shot, discarding anything left from an unfinished one."""
        with self._lock:
            if self._shot.normal_frame is not None or self._shot.wide_frame is not None:
                logger.warning("Discarding frames from an unfinished shot")
            self._shot.close_frames()
            self._shot.reset(is_two_lens_shot)

    def on_frame_arrived(self, lens_id: LensId, frame: CapturedFrame,
                         calibration: Optional[LensCalibration] = None) -> Optional[Future]:
        """
        Record a lens frame and mark the lens done.

        Returns:
            A Future for the BokehResult if this delivery dispatched a run,
            else None
        """
        with self._lock:
            if calibration is not None:
                self._shot.set_calibration(lens_id, calibration)

            if not self._shot.is_two_lens_shot:
                if lens_id != self.single_lens:
                    logger.debug("Closing %s frame of a single-lens shot", lens_id.value)
                    frame.close()
                    return None
                return self._dispatch_single_locked(frame, self._shot.calibration_for(lens_id))

            logger.debug("Frame arrived from %s lens: %s", lens_id.value, frame)
            self._shot.set_frame(lens_id, frame)
            self._shot.mark_done(lens_id)
            return self._try_dispatch_locked()

    def on_capture_completed(self, lens_id: LensId, calibration: LensCalibration) -> Optional[Future]:
        """Record a lens's capture metadata and mark the lens done."""
        with self._lock:
            logger.debug("Capture completed for %s lens (face: %s)", lens_id.value, calibration.has_face)
            self._shot.set_calibration(lens_id, calibration)
            if not self._shot.is_two_lens_shot:
                return None
            self._shot.mark_done(lens_id)
            return self._try_dispatch_locked()

    def _try_dispatch_locked(self) -> Optional[Future]:
        if not self._shot.is_complete():
            return None

        pair = self._shot.detach()
        if self._in_flight:
            logger.warning("A shot is still processing, dropping the new pair")
            pair.close_frames()
            return _finished(BokehResult(status=ShotStatus.DROPPED, image=placeholder_image()))

        self._in_flight = True
        logger.info("Both lenses ready, dispatching shot")
        return self._executor.submit(self._run, pair)

    def _dispatch_single_locked(self, frame: CapturedFrame,
                                calibration: Optional[LensCalibration]) -> Future:
        if self._in_flight:
            logger.warning("A shot is still processing, dropping the single-lens frame")
            frame.close()
            return _finished(BokehResult(status=ShotStatus.DROPPED, image=placeholder_image()))

        self._in_flight = True
        logger.info("Dispatching single-lens shot from %s lens", frame.lens_id.value)
        return self._executor.submit(self._run_single, frame, calibration)

    def _failed(self, error: Exception, fallback_frame: Optional[CapturedFrame]) -> BokehResult:
        logger.error("Shot failed: %s", error)
        fallback = None
        if fallback_frame is not None and fallback_frame.image is not None:
            fallback = fallback_frame.image.copy()
        return BokehResult(
            status=ShotStatus.FAILED,
            image=placeholder_image(),
            fallback=fallback,
            error=str(error)
        )

    def _finish(self, result: BokehResult) -> BokehResult:
        if self.on_result is not None:
            self.on_result(result)
        return result

    def _run(self, pair: ShotPair) -> BokehResult:
        try:
            try:
                result = self.pipeline.process(pair)
            except (BokehError, cv2.error) as e:
                result = self._failed(e, pair.normal_frame)
        finally:
            pair.close_frames()
            with self._lock:
                self._in_flight = False
        return self._finish(result)

    def _run_single(self, frame: CapturedFrame, calibration: Optional[LensCalibration]) -> BokehResult:
        try:
            try:
                result = self.pipeline.process_single(frame, calibration, is_front=self.is_front)
            except (BokehError, cv2.error) as e:
                result = self._failed(e, frame)
        finally:
            frame.close()
            with self._lock:
                self._in_flight = False
        return self._finish(result)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker, waiting for a run in flight, and close pending frames."""
        self._executor.shutdown(wait=wait)
        with self._lock:
            self._shot.close_frames()
            self._shot.reset(self._shot.is_two_lens_shot)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False
