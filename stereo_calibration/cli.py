"""
Command-line entry points.

    stereo-calib     calibrate a stereo rig and compute rectification
    mono-calib       calibrate a single camera
    chessboard       render a printable calibration target
    rectify-folders  rectify left/right image folders with a stored calibration
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

import cv2

from .data_structures import CalibrationConfig
from .errors import CalibrationError
from .geometry import generate_chessboard
from .image_list import build_image_list, build_stereo_image_list, prompt_image_list, read_image_list
from .logger import setup_logger
from .pipeline import rectify_folders, run_mono_calibration, run_stereo_calibration
from .review import ReviewWindow

logger = logging.getLogger(__name__)


def _add_common_args(p: argparse.ArgumentParser, stereo: bool) -> None:
    p.add_argument("image_list", nargs="?", help="Image list file (YAML/JSON/XML or one path per line)")
    p.add_argument("-w", "--board-width", type=int, help="Inner corners per board row")
    p.add_argument("-H", "--board-height", type=int, help="Inner corners per board column")
    p.add_argument("--square-size", type=float, help="Square side length in world units (e.g. mm)")
    if stereo:
        p.add_argument(
            "--prefix",
            nargs=2,
            metavar=("LEFT", "RIGHT"),
            help="Left and right image prefixes, e.g. images/left images/right",
        )
    else:
        p.add_argument("--prefix", help="Image prefix, e.g. images/left")
    p.add_argument("--count", type=int, help="Number of images per camera when using --prefix")
    p.add_argument("--ext", default=".jpg", help="Image extension when using --prefix (default: .jpg)")
    p.add_argument("-o", "--output", help="Calibration file to write")
    p.add_argument("--config", help="YAML configuration file")
    p.add_argument("--headless", action="store_true", help="Do not open any window")
    p.add_argument("--workers", type=int, help="Parallel corner detection workers")
    p.add_argument("--figures-dir", help="Save diagnostic figures to this folder")
    p.add_argument("--log-file", help="Also write the log to this file")
    p.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")


def _load_config(args: argparse.Namespace) -> CalibrationConfig:
    """Read the config file (if any) and apply command-line overrides."""
    config = CalibrationConfig.from_yaml(args.config) if args.config else CalibrationConfig()
    overrides = {
        "board.width": args.board_width,
        "board.height": args.board_height,
        "board.square_size": args.square_size,
        "collection.num_workers": args.workers,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)
    if args.headless:
        config.set("review.enabled", False)
    return config


def _resolve_images(args: argparse.Namespace, stereo: bool) -> list[str]:
    if args.image_list:
        return read_image_list(args.image_list)
    if args.prefix:
        if args.count is None:
            raise ValueError("--prefix requires --count")
        if stereo:
            return build_stereo_image_list(args.prefix[0], args.prefix[1], args.count, ext=args.ext)
        return build_image_list(args.prefix, args.count, ext=args.ext)
    if args.headless:
        raise ValueError("No image list given (pass an image list file or --prefix/--count)")
    return prompt_image_list(stereo=stereo)


def _run(func, *args, **kwargs) -> None:
    """Run a command, turning expected failures into a logged diagnostic and exit status 1."""
    try:
        func(*args, **kwargs)
    except (CalibrationError, OSError, ValueError) as e:
        logger.error("Error: %s", e)
        sys.exit(1)


def parse_stereo_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Calibrate a stereo camera rig from chessboard image pairs")
    _add_common_args(p, stereo=True)
    p.add_argument("--no-rectify-view", action="store_true", help="Do not show rectified pairs afterwards")
    p.add_argument("--prior-left", help="Single-camera calibration of the left camera (fixes its intrinsics)")
    p.add_argument("--prior-right", help="Single-camera calibration of the right camera (fixes its intrinsics)")
    p.add_argument("--alpha", type=float, help="Rectification scaling: 0 = valid pixels only, 1 = full view")
    p.add_argument("--max-pairs", type=int, help="Use at most this many diverse pairs (0 = all)")
    args = p.parse_args(argv)
    if (args.prior_left is None) != (args.prior_right is None):
        p.error("--prior-left and --prior-right must be given together")
    return args


def _stereo(args: argparse.Namespace) -> None:
    setup_logger(args.log_level, args.log_file)
    config = _load_config(args)
    if args.alpha is not None:
        config.set("rectification.alpha", args.alpha)
    if args.max_pairs is not None:
        config.set("collection.max_pairs", args.max_pairs)
    if args.no_rectify_view:
        config.set("rectification.show", False)

    flags = config.stereo_flags
    if args.prior_left is not None:
        flags = dataclasses.replace(flags, fix_intrinsics=True)

    images = _resolve_images(args, stereo=True)
    artifact = run_stereo_calibration(
        images,
        config.board,
        output_path=args.output or config.output_path(stereo=True),
        flags=flags,
        prior_left_path=args.prior_left,
        prior_right_path=args.prior_right,
        alpha=config.rectify_alpha,
        review=ReviewWindow(enabled=config.review_enabled, delay_ms=config.review_delay_ms(stereo=True)),
        show_rectified=config.show_rectified,
        num_workers=config.num_workers,
        max_pairs=config.max_pairs,
        figures_dir=args.figures_dir,
    )
    logger.info(
        "Stereo calibration done: %d pairs, RMS %.4f, average epipolar error %.4f px",
        artifact.result.frame_count,
        artifact.result.solver_rms,
        artifact.result.overall_residual,
    )


def stereo_main(argv: list[str] | None = None) -> None:
    """Main entry point of ``stereo-calib``."""
    _run(_stereo, parse_stereo_args(argv))


def parse_mono_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Calibrate a single camera from chessboard images")
    _add_common_args(p, stereo=False)
    p.add_argument("--min-frames", type=int, help="Stop collecting after this many accepted frames")
    p.add_argument("--no-undistort-view", action="store_true", help="Do not show undistorted images afterwards")
    return p.parse_args(argv)


def _mono(args: argparse.Namespace) -> None:
    setup_logger(args.log_level, args.log_file)
    config = _load_config(args)
    if args.min_frames is not None:
        config.set("collection.min_frames", args.min_frames)

    images = _resolve_images(args, stereo=False)
    artifact = run_mono_calibration(
        images,
        config.board,
        output_path=args.output or config.output_path(stereo=False),
        flags=config.mono_flags,
        target_frames=config.min_frames,
        review=ReviewWindow(enabled=config.review_enabled, delay_ms=config.review_delay_ms(stereo=False)),
        show_undistorted=not args.no_undistort_view,
        num_workers=config.num_workers,
        figures_dir=args.figures_dir,
    )
    logger.info(
        "Mono calibration done: %d frames, RMS %.4f, average reprojection error %.4f px",
        artifact.result.frame_count,
        artifact.result.solver_rms,
        artifact.result.overall_residual,
    )


def mono_main(argv: list[str] | None = None) -> None:
    """Main entry point of ``mono-calib``."""
    _run(_mono, parse_mono_args(argv))


def parse_chessboard_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Render a printable chessboard calibration target")
    p.add_argument("-w", "--board-width", type=int, default=6, help="Inner corners per row (default: 6)")
    p.add_argument("-H", "--board-height", type=int, default=5, help="Inner corners per column (default: 5)")
    p.add_argument("--square-px", type=int, help="Square side in pixels (default: fit an A4 page)")
    p.add_argument("-o", "--output", default="chessboard.png", help="Output image (default: chessboard.png)")
    p.add_argument("--show", action="store_true", help="Display the board after writing it")
    return p.parse_args(argv)


def _chessboard(args: argparse.Namespace) -> None:
    setup_logger()
    board = generate_chessboard(args.board_width, args.board_height, square_px=args.square_px)
    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(output), board):
        raise OSError(f"Cannot write {output}")
    logger.info("Chessboard with %dx%d inner corners written to %s", args.board_width, args.board_height, output)
    if args.show:
        cv2.imshow("chessboard", board)
        cv2.waitKey(0)
        cv2.destroyAllWindows()


def chessboard_main(argv: list[str] | None = None) -> None:
    """Main entry point of ``chessboard``."""
    _run(_chessboard, parse_chessboard_args(argv))


def parse_rectify_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Rectify stereo image folders using a stereo calibration file")
    p.add_argument("--calib", required=True, help="Stereo calibration YAML written by stereo-calib")
    p.add_argument("--left", required=True, help="Folder of left images")
    p.add_argument("--right", required=True, help="Folder of right images")
    p.add_argument("--out-left", required=True, help="Output folder for rectified left")
    p.add_argument("--out-right", required=True, help="Output folder for rectified right")
    p.add_argument(
        "--no-crop",
        action="store_true",
        help="Do not crop to ROI (keep full rectified images)",
    )
    return p.parse_args(argv)


def rectify_folders_main(argv: list[str] | None = None) -> None:
    """Main entry point of ``rectify-folders``."""
    args = parse_rectify_args(argv)
    setup_logger()
    _run(
        rectify_folders,
        calib_path=args.calib,
        left_dir=args.left,
        right_dir=args.right,
        out_left=args.out_left,
        out_right=args.out_right,
        crop=not args.no_crop,
    )


if __name__ == "__main__":
    stereo_main()
