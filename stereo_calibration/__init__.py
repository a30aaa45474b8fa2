"""
Chessboard camera calibration package.

This package provides modular tools for:
- Chessboard detection and stereo/mono correspondence collection
- Intrinsic and stereo calibration with residual checks
- Stereo rectification, review windows and result persistence
"""

from .calibration import (
    calibrate_mono,
    calibrate_stereo,
    ensure_enough_correspondences,
    load_prior_intrinsics,
    subsample_stereo_pairs,
)
from .data_structures import (
    AcceptedCorrespondence,
    BoardSpec,
    CalibrationArtifact,
    CalibrationConfig,
    CalibrationFlags,
    CalibrationResult,
    CalibrationRun,
    CameraIndex,
    ImagePairRef,
    RectificationResult,
)
from .detection import CorrespondenceCollector, FrameDetection, detect_corners
from .errors import (
    ArtifactError,
    CalibrationError,
    ImageListError,
    InsufficientDataError,
    NumericallyInvalidCalibrationError,
)
from .geometry import board_corner_positions, generate_chessboard
from .image_list import build_image_list, build_stereo_image_list, make_image_pairs, read_image_list
from .io import append_rectification, load_calibration, load_intrinsics, save_calibration
from .logger import setup_logger
from .pipeline import rectify_folders, run_mono_calibration, run_stereo_calibration
from .quality import epipolar_errors, reprojection_errors
from .rectification import rectify_image, rectify_stereo, undistortion_maps
from .review import ReviewWindow, merge_images

__all__ = [
    # Data structures
    "AcceptedCorrespondence",
    "BoardSpec",
    "CalibrationArtifact",
    "CalibrationConfig",
    "CalibrationFlags",
    "CalibrationResult",
    "CalibrationRun",
    "CameraIndex",
    "ImagePairRef",
    "RectificationResult",
    # Errors
    "ArtifactError",
    "CalibrationError",
    "ImageListError",
    "InsufficientDataError",
    "NumericallyInvalidCalibrationError",
    # Input
    "board_corner_positions",
    "build_image_list",
    "build_stereo_image_list",
    "generate_chessboard",
    "make_image_pairs",
    "read_image_list",
    # Detection
    "CorrespondenceCollector",
    "FrameDetection",
    "detect_corners",
    # Calibration
    "calibrate_mono",
    "calibrate_stereo",
    "ensure_enough_correspondences",
    "load_prior_intrinsics",
    "subsample_stereo_pairs",
    "epipolar_errors",
    "reprojection_errors",
    # Rectification
    "rectify_image",
    "rectify_stereo",
    "undistortion_maps",
    # Review
    "ReviewWindow",
    "merge_images",
    # I/O
    "append_rectification",
    "load_calibration",
    "load_intrinsics",
    "save_calibration",
    # Pipeline
    "rectify_folders",
    "run_mono_calibration",
    "run_stereo_calibration",
    "setup_logger",
]
