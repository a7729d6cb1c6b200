#!/usr/bin/env python3
"""
Dual-Lens Bokeh - Main Entry Point
==================================

Renders a bokeh portrait from a normal/wide lens image pair and their
calibration metadata.

Usage:
    python main.py --normal normal.jpg --wide wide.jpg \
        --normal-calibration normal.json --wide-calibration wide.json
    python main.py --wide wide.jpg --single-lens --detect-face

References:
- OpenCV Python Tutorials: https://docs.opencv.org/4.x/d6/d00/tutorial_py_root.html
- WLS disparity filtering: https://docs.opencv.org/4.x/d3/d14/tutorial_ximgproc_disparity_filtering.html
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import cv2

from dualbokeh.capture import CaptureRendezvous, CapturedFrame
from dualbokeh.config import (
    BokehSettings,
    LensCalibration,
    LensId,
    load_calibration_from_json,
    load_settings_from_json,
    validate_settings,
)
from dualbokeh.exceptions import BokehError
from dualbokeh.face_detection import FaceDetector
from dualbokeh.logger import get_logger, setup_logger
from dualbokeh.pipeline import BokehPipeline, ShotStatus
from dualbokeh.visualization import show_stages

logger = get_logger("dualbokeh.main")


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Dual-lens bokeh portrait renderer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Dual-lens bokeh with calibration metadata
    python main.py --normal normal.jpg --wide wide.jpg \\
        --normal-calibration normal.json --wide-calibration wide.json

    # Find the face in the normal frame and keep it sharp
    python main.py --normal normal.jpg --wide wide.jpg --detect-face

    # Save every intermediate stage
    python main.py --normal normal.jpg --wide wide.jpg --save-intermediate --output outputs/

    # Single-lens portrait from the wide frame
    python main.py --wide wide.jpg --single-lens --detect-face
        """,
    )

    # Inputs
    parser.add_argument("--normal", type=str, help="Path to the normal lens image")
    parser.add_argument("--wide", type=str, help="Path to the wide lens image")
    parser.add_argument(
        "--normal-calibration", type=str, help="Normal lens calibration JSON file"
    )
    parser.add_argument(
        "--wide-calibration", type=str, help="Wide lens calibration JSON file"
    )
    parser.add_argument(
        "--settings", type=str, help="Pipeline settings JSON file (flags below override it)"
    )

    # Modes
    parser.add_argument(
        "--calibration-mode",
        action="store_true",
        help="Save the raw shots with a timestamp instead of processing them",
    )
    parser.add_argument(
        "--single-lens",
        action="store_true",
        help="Render a single-lens portrait from the --wide image",
    )
    parser.add_argument(
        "--front-facing",
        action="store_true",
        help="Mirror the single-lens portrait (front camera)",
    )

    # Stereo matching
    parser.add_argument(
        "--downscale", type=float, help="Working scale for matching (default: 0.5)"
    )
    parser.add_argument(
        "--window-size", type=int, help="SGBM block size (default: 5, forced odd)"
    )
    parser.add_argument(
        "--num-disparities",
        type=int,
        help="Number of disparities (default: 32, rounded down to a multiple of 16)",
    )
    parser.add_argument("--p1", type=int, help="SGBM P1 (default: 8 * window^2)")
    parser.add_argument("--p2", type=int, help="SGBM P2 (default: 32 * window^2)")
    parser.add_argument("--prefilter-cap", type=int, help="SGBM prefilter cap (default: 63)")
    parser.add_argument(
        "--speckle-size", type=int, help="Speckle window size (default: 100)"
    )
    parser.add_argument("--speckle-range", type=int, help="Speckle range (default: 32)")
    parser.add_argument("--wls-lambda", type=float, help="WLS lambda (default: 8000)")
    parser.add_argument("--wls-sigma", type=float, help="WLS sigma color (default: 1.5)")
    parser.add_argument(
        "--invert-matcher",
        action="store_true",
        help="Use the right matcher's disparity as the primary map",
    )

    # Mask and style
    parser.add_argument(
        "--threshold", type=int, help="Foreground disparity threshold 0-255 (default: 128)"
    )
    parser.add_argument("--blur-radius", type=int, help="Background blur radius (default: 12)")
    parser.add_argument(
        "--mono", action="store_true", help="Monochrome background instead of sepia"
    )
    parser.add_argument(
        "--rotation",
        type=int,
        choices=[0, 90, 180, 270],
        help="Clockwise display rotation of the result",
    )
    parser.add_argument(
        "--detect-face",
        action="store_true",
        help="Detect the face with a Haar cascade when calibration carries none",
    )
    parser.add_argument(
        "--no-face-protection",
        action="store_true",
        help="Do not force the face region into the foreground",
    )

    # Output
    parser.add_argument(
        "--output", type=str, help="Output directory (default: outputs)"
    )
    parser.add_argument(
        "--save-intermediate", action="store_true", help="Save every stage image"
    )
    parser.add_argument(
        "--show-intermediate", action="store_true", help="Display a grid of stage images"
    )

    # Logging
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Console log level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, help="Also log at DEBUG to this file")

    return parser.parse_args()


def setup_settings(args) -> BokehSettings:
    """Load settings and apply command-line overrides."""
    settings = load_settings_from_json(args.settings) if args.settings else BokehSettings()

    disparity_overrides = {
        "window_size": args.window_size,
        "num_disparities": args.num_disparities,
        "p1": args.p1,
        "p2": args.p2,
        "prefilter_cap": args.prefilter_cap,
        "speckle_window_size": args.speckle_size,
        "speckle_range": args.speckle_range,
        "wls_lambda": args.wls_lambda,
        "wls_sigma": args.wls_sigma,
    }
    disparity = replace(
        settings.disparity,
        **{k: v for k, v in disparity_overrides.items() if v is not None}
    )

    overrides = {
        "downscale_factor": args.downscale,
        "mask_threshold": args.threshold,
        "blur_radius": args.blur_radius,
        "required_rotation": args.rotation,
        "output_dir": args.output,
    }
    settings = replace(
        settings,
        disparity=disparity,
        **{k: v for k, v in overrides.items() if v is not None}
    )

    # Flags only switch behaviour on
    if args.calibration_mode:
        settings.calibration_mode = True
    if args.save_intermediate:
        settings.save_intermediate = True
    if args.show_intermediate:
        settings.show_intermediate = True
    if args.invert_matcher:
        settings.invert_matcher = True
    if args.mono:
        settings.sepia = False
    if args.no_face_protection:
        settings.protect_face = False

    validate_settings(settings)
    return settings


def setup_face_detector(args) -> Optional[FaceDetector]:
    """Create the face detector when --detect-face is given."""
    if not args.detect_face:
        return None
    try:
        return FaceDetector()
    except FileNotFoundError as e:
        logger.error("Face detection unavailable: %s", e)
        sys.exit(1)


def load_image(path: Optional[str], name: str):
    if not path:
        logger.error("--%s is required", name)
        sys.exit(1)
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        logger.error("Could not read %s image: %s", name, path)
        sys.exit(1)
    return image


def load_calibration(path: Optional[str], lens_id: LensId) -> LensCalibration:
    """Load a lens calibration, or an empty record when none is given."""
    if not path:
        logger.info("No %s calibration given, matching unrectified", lens_id.value)
        return LensCalibration(lens_id=lens_id)

    calibration = load_calibration_from_json(path)
    if calibration.lens_id != lens_id:
        logger.warning("%s describes the %s lens, using it for %s",
                       path, calibration.lens_id.value, lens_id.value)
        calibration = replace(calibration, lens_id=lens_id)
    return calibration


def with_detected_face(calibration: LensCalibration, image, detector: Optional[FaceDetector]):
    if detector is None or calibration.has_face:
        return calibration
    return detector.detect(image).apply_to(calibration)


def main():
    """Main entry point."""
    args = parse_args()
    setup_logger(level=getattr(logging, args.log_level), log_file=args.log_file)

    try:
        settings = setup_settings(args)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Invalid settings: %s", e)
        sys.exit(1)

    detector = setup_face_detector(args)
    pipeline = BokehPipeline(settings)
    output_dir = Path(settings.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        wide_calibration = load_calibration(args.wide_calibration, LensId.WIDE)
        normal_calibration = None
        if not args.single_lens:
            normal_calibration = load_calibration(args.normal_calibration, LensId.NORMAL)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Invalid calibration: %s", e)
        sys.exit(1)

    with CaptureRendezvous(pipeline, is_front=args.front_facing) as rendezvous:
        wide_image = load_image(args.wide, "wide")

        if args.single_lens:
            rendezvous.begin_shot(is_two_lens_shot=False)
            wide_calibration = with_detected_face(wide_calibration, wide_image, detector)
            future = rendezvous.on_frame_arrived(
                LensId.WIDE, CapturedFrame(LensId.WIDE, wide_image), wide_calibration
            )
        else:
            normal_image = load_image(args.normal, "normal")
            normal_calibration = with_detected_face(normal_calibration, normal_image, detector)

            rendezvous.begin_shot(is_two_lens_shot=True)
            rendezvous.on_frame_arrived(
                LensId.NORMAL, CapturedFrame(LensId.NORMAL, normal_image), normal_calibration
            )
            future = rendezvous.on_frame_arrived(
                LensId.WIDE, CapturedFrame(LensId.WIDE, wide_image), wide_calibration
            )

        try:
            result = future.result()
        except BokehError as e:
            logger.error("Processing failed: %s", e)
            sys.exit(1)

    if result.status == ShotStatus.FAILED:
        logger.error("Shot failed: %s", result.error)
        sys.exit(1)

    if result.status == ShotStatus.CALIBRATION:
        logger.info("Calibration shots saved to %s", output_dir)
        return

    output_path = output_dir / "bokeh.jpg"
    cv2.imwrite(str(output_path), result.image)
    logger.info("Saved %s (%.1f ms, %s)", output_path, result.computation_time_ms,
                "rectified" if result.rectified else "unrectified")

    if settings.show_intermediate and result.stages:
        show_stages(result.stages, rotation=settings.required_rotation)
        cv2.destroyAllWindows()


if __name__ == "__main__":
    main()
