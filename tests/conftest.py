"""
Shared fixtures: a synthetic stereo rig looking at a rendered chessboard.

The left camera sits at the origin, the right camera 60 mm to its right
(T = (-60, 0, 0), R = I). Both share the same distortion-free intrinsics.
"""

import matplotlib

matplotlib.use("Agg")

import logging

import cv2
import numpy as np
import pytest

from stereo_calibration.data_structures import AcceptedCorrespondence, BoardSpec, ImagePairRef
from stereo_calibration.geometry import board_corner_positions, generate_chessboard

IMAGE_SIZE = (640, 480)
FOCAL = 800.0
BASELINE_T = np.array([-60.0, 0.0, 0.0])
SQUARE_PX = 40

# Rodrigues vectors of the board in the left camera frame
BOARD_ROTATIONS = [
    (0.0, 0.0, 0.0),
    (0.3, 0.0, 0.0),
    (-0.3, 0.0, 0.0),
    (0.0, 0.3, 0.0),
    (0.0, -0.3, 0.0),
    (0.2, 0.2, 0.1),
    (-0.2, 0.25, -0.1),
    (0.25, -0.2, 0.05),
]


def camera_matrix() -> np.ndarray:
    # principal point at the pixel-center image center, which is where
    # calibrateCamera pins it with CALIB_FIX_PRINCIPAL_POINT
    cx = (IMAGE_SIZE[0] - 1) / 2
    cy = (IMAGE_SIZE[1] - 1) / 2
    return np.array([[FOCAL, 0, cx], [0, FOCAL, cy], [0, 0, 1]], dtype=np.float64)


def board_pose(board: BoardSpec, rvec, distance: float = 650.0, shift_x: float = 30.0):
    """Pose (R, t) that puts the board center at (shift_x, 0, distance) in the left camera frame."""
    R, _ = cv2.Rodrigues(np.array(rvec, dtype=np.float64))
    cols, rows = board.pattern_size
    center = np.array([(cols - 1) * board.square_size / 2, (rows - 1) * board.square_size / 2, 0.0])
    t = -R @ center + np.array([shift_x, 0.0, distance])
    return R, t


def project(board: BoardSpec, R, t, K) -> np.ndarray:
    rvec, _ = cv2.Rodrigues(R)
    pts, _ = cv2.projectPoints(board_corner_positions(board), rvec, t, K, np.zeros(5))
    return pts.astype(np.float32).reshape(-1, 1, 2)


def render_view(board: BoardSpec, R, t, K) -> np.ndarray:
    """Warp a generated chessboard image into a camera view."""
    pattern = generate_chessboard(board.corners_per_row, board.corners_per_column, square_px=SQUARE_PX)
    scale = board.square_size / SQUARE_PX
    # boundary between the first and second square column sits at pixel margin + q - 0.5
    offset = 2 * SQUARE_PX - 0.5
    to_world = np.array([[scale, 0, -offset * scale], [0, scale, -offset * scale], [0, 0, 1]])
    plane = np.column_stack([R[:, 0], R[:, 1], t])
    H = K @ plane @ to_world
    return cv2.warpPerspective(pattern, H, IMAGE_SIZE, flags=cv2.INTER_LINEAR, borderValue=128)


def write_stereo_pairs(directory, board: BoardSpec, rotations=BOARD_ROTATIONS) -> list[str]:
    """Render left/right views and return the interleaved image list."""
    K = camera_matrix()
    images = []
    for idx, rvec in enumerate(rotations, start=1):
        R, t = board_pose(board, rvec)
        left = directory / f"left{idx:02d}.png"
        right = directory / f"right{idx:02d}.png"
        cv2.imwrite(str(left), render_view(board, R, t, K))
        cv2.imwrite(str(right), render_view(board, R, t + BASELINE_T, K))
        images.extend([str(left), str(right)])
    return images


@pytest.fixture
def board():
    return BoardSpec(corners_per_row=6, corners_per_column=5, square_size=30.0)


@pytest.fixture
def intrinsics():
    return camera_matrix(), np.zeros((5, 1))


@pytest.fixture
def stereo_images(tmp_path, board):
    """Eight rendered stereo pairs on disk, as an alternating left/right list."""
    return write_stereo_pairs(tmp_path, board)


@pytest.fixture
def mono_images(stereo_images):
    """The left views only."""
    return stereo_images[0::2]


@pytest.fixture
def projected_correspondences(board):
    """Exact (noise-free) stereo correspondences from projecting the board corners."""
    K = camera_matrix()
    world = board_corner_positions(board)
    result = []
    for idx, rvec in enumerate(BOARD_ROTATIONS):
        R, t = board_pose(board, rvec)
        result.append(
            AcceptedCorrespondence(
                left_corners=project(board, R, t, K),
                right_corners=project(board, R, t + BASELINE_T, K),
                world_points=world.copy(),
                source=ImagePairRef(f"left{idx + 1:02d}.png", f"right{idx + 1:02d}.png", idx),
            )
        )
    return result


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers installed by the command-line tools between tests."""
    yield
    logging.getLogger("stereo_calibration").handlers.clear()
