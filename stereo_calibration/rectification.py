"""
Stereo rectification (Bouguet) and undistortion maps.
"""

import dataclasses
import logging

import cv2
import numpy as np

from .data_structures import CalibrationResult, RectificationResult

logger = logging.getLogger(__name__)


def compute_rectification_maps(
    K: np.ndarray,
    dist: np.ndarray,
    R: np.ndarray,
    P: np.ndarray,
    image_size: tuple[int, int],
    map_type: int = cv2.CV_16SC2,
) -> tuple[np.ndarray, np.ndarray]:
    """Compute the undistort-rectify remap table of one camera."""
    map1, map2 = cv2.initUndistortRectifyMap(K, dist, R, P, tuple(image_size), map_type)
    return map1, map2


def rectify_stereo(
    result: CalibrationResult,
    image_size: tuple[int, int] | None = None,
    alpha: float = 1.0,
    zero_disparity: bool = True,
    compute_maps: bool = True,
    map_type: int = cv2.CV_16SC2,
) -> RectificationResult:
    """
    Derive rectifying rotations, projections, Q and remap tables.

    Args:
        result: Stereo calibration result (R and T required)
        image_size: (width, height); defaults to the calibration image size
        alpha: 0 crops to valid pixels only, 1 keeps every source pixel
        zero_disparity: Make principal points coincide in the rectified views
        compute_maps: Also build per-camera remap tables
        map_type: Remap table type for initUndistortRectifyMap

    Returns:
        RectificationResult

    Raises:
        ValueError: If the result carries no stereo extrinsics
    """
    if not result.is_stereo:
        raise ValueError("Rectification requires a stereo calibration result (R and T)")
    if not 0.0 <= alpha <= 1.0 and alpha != -1:
        raise ValueError(f"alpha must be within [0, 1] (or -1 for default scaling), got {alpha}")

    image_size = tuple(image_size or result.image_size)
    rect_flags = cv2.CALIB_ZERO_DISPARITY if zero_disparity else 0
    R1, R2, P1, P2, Q, roi1, roi2 = cv2.stereoRectify(
        result.camera_matrix_left,
        result.dist_left,
        result.camera_matrix_right,
        result.dist_right,
        image_size,
        result.R,
        result.T,
        flags=rect_flags,
        alpha=alpha,
        newImageSize=image_size,
    )

    rect = RectificationResult(
        R1=R1,
        R2=R2,
        P1=P1,
        P2=P2,
        Q=Q,
        roi_left=tuple(int(v) for v in roi1),
        roi_right=tuple(int(v) for v in roi2),
        alpha=float(alpha),
    )
    logger.info("Rectification complete. ROIs: L=%s, R=%s", rect.roi_left, rect.roi_right)

    if compute_maps:
        rect = attach_maps(rect, result, image_size, map_type)
    return rect


def attach_maps(
    rect: RectificationResult,
    result: CalibrationResult,
    image_size: tuple[int, int] | None = None,
    map_type: int = cv2.CV_16SC2,
) -> RectificationResult:
    """Return a copy of ``rect`` with remap tables built from the stored matrices."""
    image_size = tuple(image_size or result.image_size)
    map_left = compute_rectification_maps(
        result.camera_matrix_left, result.dist_left, rect.R1, rect.P1, image_size, map_type
    )
    map_right = compute_rectification_maps(
        result.camera_matrix_right, result.dist_right, rect.R2, rect.P2, image_size, map_type
    )
    return dataclasses.replace(rect, map_left=map_left, map_right=map_right)


def rectify_image(image: np.ndarray, maps: tuple[np.ndarray, np.ndarray]) -> np.ndarray:
    """Apply a remap table to an image."""
    map1, map2 = maps
    return cv2.remap(image, map1, map2, interpolation=cv2.INTER_LINEAR)


def crop_to_roi(image: np.ndarray, roi: tuple[int, int, int, int] | None) -> np.ndarray:
    """Crop to a valid region (x, y, w, h); empty or missing ROIs leave the image as is."""
    if roi is None or tuple(roi) == (0, 0, 0, 0):
        return image
    x, y, w, h = roi
    return image[y : y + h, x : x + w]


def undistortion_maps(
    K: np.ndarray,
    dist: np.ndarray,
    image_size: tuple[int, int],
    alpha: float = 1.0,
    map_type: int = cv2.CV_16SC2,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Single-camera undistortion table.

    The new camera matrix comes from getOptimalNewCameraMatrix so that alpha
    trades valid-pixel cropping against field of view the same way as for
    stereo rectification.
    """
    image_size = tuple(image_size)
    new_K, _ = cv2.getOptimalNewCameraMatrix(K, dist, image_size, alpha, image_size)
    return compute_rectification_maps(K, dist, np.eye(3), new_K, image_size, map_type)
