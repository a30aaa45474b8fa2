"""
Calibration quality metrics.

Both metrics are diagnostic: they are logged and stored with the result, and
the operator decides whether to keep it.
"""

import cv2
import numpy as np


def reprojection_errors(
    obj_list: list[np.ndarray],
    img_list: list[np.ndarray],
    rvecs: list[np.ndarray],
    tvecs: list[np.ndarray],
    K: np.ndarray,
    dist: np.ndarray,
) -> tuple[float, list[float]]:
    """
    Re-project each frame's board points through the solved model.

    Args:
        obj_list: World points per frame (Nx3)
        img_list: Observed corners per frame (Nx1x2)
        rvecs, tvecs: Board pose per frame
        K, dist: Camera model

    Returns:
        (RMS over all points of all frames, per-frame RMS list)
    """
    total_err = 0.0
    total_points = 0
    per_frame = []
    for o, i, rvec, tvec in zip(obj_list, img_list, rvecs, tvecs, strict=True):
        proj, _ = cv2.projectPoints(o, rvec, tvec, K, dist)
        err = float(np.linalg.norm(proj.reshape(-1, 2) - i.reshape(-1, 2)))
        n = len(o)
        per_frame.append(float(np.sqrt(err * err / n)))
        total_err += err * err
        total_points += n
    if total_points == 0:
        return 0.0, per_frame
    return float(np.sqrt(total_err / total_points)), per_frame


def epipolar_errors(
    img_left: list[np.ndarray],
    img_right: list[np.ndarray],
    K1: np.ndarray,
    d1: np.ndarray,
    K2: np.ndarray,
    d2: np.ndarray,
    F: np.ndarray,
) -> tuple[float, list[float]]:
    """
    Mean symmetric point-to-epipolar-line distance.

    Points are undistorted with their own camera (keeping pixel units), each
    view's points are mapped to epilines in the other view through F, and the
    distances in both directions are summed per point. The total is divided by
    the number of points. Only the epipolar geometry enters, so the metric is
    meaningful even when the intrinsics were held fixed.

    Args:
        img_left, img_right: Corners per pair (Nx1x2), same order in both views
        K1, d1, K2, d2: Camera models
        F: Fundamental matrix (left -> right)

    Returns:
        (mean error over all points, mean error per pair)
    """
    total_err = 0.0
    total_points = 0
    per_pair = []
    for pts_l, pts_r in zip(img_left, img_right, strict=True):
        und_l = cv2.undistortPoints(pts_l.reshape(-1, 1, 2).astype(np.float32), K1, d1, P=K1).reshape(-1, 2)
        und_r = cv2.undistortPoints(pts_r.reshape(-1, 1, 2).astype(np.float32), K2, d2, P=K2).reshape(-1, 2)

        # lines in the right image from left points, and vice versa; (a, b) is unit length
        lines_in_right = cv2.computeCorrespondEpilines(und_l.reshape(-1, 1, 2), 1, F).reshape(-1, 3)
        lines_in_left = cv2.computeCorrespondEpilines(und_r.reshape(-1, 1, 2), 2, F).reshape(-1, 3)

        d_left = np.abs(np.sum(lines_in_left[:, :2] * und_l, axis=1) + lines_in_left[:, 2])
        d_right = np.abs(np.sum(lines_in_right[:, :2] * und_r, axis=1) + lines_in_right[:, 2])
        err = float(np.sum(d_left + d_right))

        npt = len(und_l)
        per_pair.append(err / npt if npt else 0.0)
        total_err += err
        total_points += npt
    if total_points == 0:
        return 0.0, per_pair
    return total_err / total_points, per_pair
