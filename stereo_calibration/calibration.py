"""
Camera parameter estimation.

Wraps OpenCV's calibrateCamera / stereoCalibrate with the repository's flag
policy, validates the correspondence set before solving and normalizes the
solver outputs into a CalibrationResult.
"""

import logging
import math
from pathlib import Path

import cv2
import numpy as np

from .data_structures import AcceptedCorrespondence, CalibrationFlags, CalibrationResult
from .errors import InsufficientDataError, NumericallyInvalidCalibrationError
from .quality import epipolar_errors, reprojection_errors

logger = logging.getLogger(__name__)

MIN_STEREO_PAIRS = 2
MIN_MONO_FRAMES = 3


# -------------------------
# Helper functions
# -------------------------


def _standardize_points(
    obj_list: list[np.ndarray], img_list: list[np.ndarray]
) -> tuple[list[np.ndarray], list[np.ndarray]]:
    """Standardize object and image point arrays to consistent dtypes."""
    o_list = [np.asarray(o, dtype=np.float32).reshape(-1, 3) for o in obj_list]
    i_list = [np.asarray(i, dtype=np.float32).reshape(-1, 1, 2) for i in img_list]
    return o_list, i_list


def _initial_intrinsics(flags: CalibrationFlags) -> tuple[np.ndarray, np.ndarray]:
    """Identity camera matrix (fx/fy = 1 for the aspect-ratio constraint) and zero distortion."""
    K = np.eye(3, dtype=np.float64)
    dist = np.zeros((8 if flags.rational_model else 5, 1), dtype=np.float64)
    return K, dist


def _seed_intrinsics(
    flags: CalibrationFlags, obj: list[np.ndarray], img: list[np.ndarray], image_size: tuple[int, int]
) -> tuple[np.ndarray, np.ndarray]:
    """Starting camera matrix and distortion for a camera without a prior calibration."""
    K, dist = _initial_intrinsics(flags)
    if flags.use_intrinsic_guess:
        # an identity guess would be taken literally by the solver
        K = cv2.initCameraMatrix2D(obj, img, image_size)
        logger.info("Initial camera matrix from board homographies: fx=%.2f fy=%.2f", K[0, 0], K[1, 1])
    return K, dist


def _check_finite(**arrays: np.ndarray | None) -> None:
    """Raise if any solved parameter contains NaN or infinity."""
    bad = [name for name, arr in arrays.items() if arr is not None and not np.all(np.isfinite(arr))]
    if bad:
        raise NumericallyInvalidCalibrationError(f"Numerically invalid calibration: non-finite values in {bad}")


def _validate(correspondences: list[AcceptedCorrespondence], stereo: bool) -> None:
    """Check the correspondence set is non-empty and point counts match across views."""
    if not correspondences:
        raise InsufficientDataError("No correspondences to calibrate", accepted=0)
    n_points = len(correspondences[0].world_points)
    for c in correspondences:
        if stereo and c.right_corners is None:
            raise ValueError(f"Frame {c.source.index} has no right-camera corners")
        views = [c.left_corners, c.right_corners] if stereo else [c.left_corners]
        for view in views:
            if len(view.reshape(-1, 2)) != len(c.world_points):
                raise ValueError(
                    f"Frame {c.source.index}: {len(view.reshape(-1, 2))} image points "
                    f"for {len(c.world_points)} world points"
                )
        if len(c.world_points) != n_points:
            raise ValueError("All frames must use the same board (point count differs)")


def ensure_enough_correspondences(accepted: int, stereo: bool, target: int | None = None) -> None:
    """
    Fail before solving when too few frames/pairs were accepted.

    Args:
        accepted: Number of accepted frames or pairs
        stereo: Stereo run (minimum 2 pairs) or mono run (minimum 3 frames)
        target: Desired count; a warning is logged when ``accepted`` falls short

    Raises:
        InsufficientDataError: Below the minimum viable count
    """
    required = MIN_STEREO_PAIRS if stereo else MIN_MONO_FRAMES
    unit = "pairs" if stereo else "frames"
    if accepted < required:
        raise InsufficientDataError(
            f"Too few {unit} to run the calibration: {accepted} accepted, {required} required",
            accepted=accepted,
            required=required,
        )
    if target is not None and accepted < target:
        logger.warning("Only %d %s accepted (target %d); calibration quality may suffer", accepted, unit, target)


def _pose_vectors(
    K: np.ndarray, dist: np.ndarray, obj_list: list[np.ndarray], img_list: list[np.ndarray]
) -> list[tuple[np.ndarray, np.ndarray]]:
    """Compute pose (rvec, tvec) for each board detection."""
    poses = []
    for o, i in zip(obj_list, img_list, strict=False):
        ok, rvec, tvec = cv2.solvePnP(o, i.reshape(-1, 2), K, dist, flags=cv2.SOLVEPNP_ITERATIVE)
        if not ok:
            rvec = np.zeros((3, 1))
            tvec = np.zeros((3, 1))
        poses.append((rvec.reshape(3), tvec.reshape(3)))
    return poses


def _diversity_subsample(
    poses: list[tuple[np.ndarray, np.ndarray]],
    max_samples: int,
    min_angle_deg: float,
    min_translation: float,
) -> list[int]:
    """
    Select diverse subset of poses based on rotation and translation thresholds.

    When too few poses pass the thresholds, the remaining slots are filled
    with the skipped poses in intake order. Returned indices are sorted.
    """
    if max_samples <= 0 or len(poses) <= max_samples:
        return list(range(len(poses)))
    min_angle = math.radians(min_angle_deg)
    selected = []
    for idx in range(len(poses)):
        r, t = poses[idx]
        keep = True
        for si in selected:
            r2, t2 = poses[si]
            angle_diff = np.linalg.norm(r - r2)
            trans_diff = np.linalg.norm(t - t2)
            if angle_diff < min_angle and trans_diff < min_translation:
                keep = False
                break
        if keep:
            selected.append(idx)
            if len(selected) >= max_samples:
                break

    if len(selected) < max_samples:
        logger.info("Only %d diverse poses; filling up to %d in intake order", len(selected), max_samples)
        chosen = set(selected)
        for idx in range(len(poses)):
            if len(selected) >= max_samples:
                break
            if idx not in chosen:
                selected.append(idx)
    return sorted(selected)


# -------------------------
# Main calibration functions
# -------------------------


def subsample_stereo_pairs(
    correspondences: list[AcceptedCorrespondence],
    image_size: tuple[int, int],
    max_pairs: int,
    prior_left: tuple[np.ndarray, np.ndarray] | None = None,
    min_angle_deg: float = 10.0,
    min_translation: float = 50.0,
) -> list[AcceptedCorrespondence]:
    """
    Keep at most ``max_pairs`` pairs with diverse left-camera poses.

    Poses come from the prior left intrinsics when given, otherwise from a quick
    single-camera calibration of the left views. Pairs keep their intake order.
    When the poses are too similar to reach the cap, the first skipped pairs
    are added back, so the result always holds ``max_pairs`` pairs (and never
    fewer than the stereo minimum).

    Args:
        correspondences: Accepted stereo pairs
        image_size: (width, height)
        max_pairs: Maximum number of pairs to keep (0 = keep all)
        prior_left: Optional (K, dist) of the left camera
        min_angle_deg: Minimum rotation difference (degrees)
        min_translation: Minimum translation difference (board units)

    Returns:
        Selected correspondences
    """
    if max_pairs <= 0 or len(correspondences) <= max_pairs:
        return correspondences
    if max_pairs < MIN_STEREO_PAIRS:
        logger.warning("max_pairs=%d is below the minimum; keeping %d pairs", max_pairs, MIN_STEREO_PAIRS)
        max_pairs = MIN_STEREO_PAIRS

    obj, img_left = _standardize_points(
        [c.world_points for c in correspondences], [c.left_corners for c in correspondences]
    )
    if prior_left is not None:
        K_left, dist_left = prior_left
    else:
        _, K_left, dist_left, _, _ = cv2.calibrateCamera(obj, img_left, image_size, None, None)

    poses = _pose_vectors(K_left, dist_left, obj, img_left)
    selected = _diversity_subsample(poses, max_pairs, min_angle_deg, min_translation)

    logger.info("Stereo diversity subsampling: %d -> %d pairs", len(correspondences), len(selected))
    logger.info("  Criteria: min_angle=%s deg, min_translation=%s", min_angle_deg, min_translation)
    return [correspondences[i] for i in selected]


def calibrate_mono(
    correspondences: list[AcceptedCorrespondence],
    image_size: tuple[int, int],
    flags: CalibrationFlags | None = None,
) -> CalibrationResult:
    """
    Single-camera calibration.

    Args:
        correspondences: Accepted frames (left_corners used)
        image_size: (width, height)
        flags: Solver options (default: mono policy)

    Returns:
        CalibrationResult with per-frame reprojection residuals

    Raises:
        InsufficientDataError: Fewer than the minimum number of frames
        NumericallyInvalidCalibrationError: Solver produced non-finite values
    """
    flags = flags or CalibrationFlags.mono_default()
    _validate(correspondences, stereo=False)
    ensure_enough_correspondences(len(correspondences), stereo=False)

    obj, img = _standardize_points(
        [c.world_points for c in correspondences], [c.left_corners for c in correspondences]
    )
    K, dist = _seed_intrinsics(flags, obj, img, image_size)
    cv_flags = flags.to_cv_flags(stereo=False)

    logger.info("Running calibration with %d frames (flags=%d %s)...", len(obj), cv_flags, flags.summary())
    rms, K, dist, rvecs, tvecs = cv2.calibrateCamera(obj, img, image_size, K, dist, flags=cv_flags)
    logger.info("Re-projection error reported by calibrateCamera(): %.6f", rms)

    _check_finite(camera_matrix=K, dist_coeffs=dist)

    total, per_frame = reprojection_errors(obj, img, rvecs, tvecs, K, dist)
    logger.info("Calibration succeeded. avg re-projection error = %.6f", total)

    return CalibrationResult(
        camera_matrix_left=K,
        dist_left=dist,
        camera_matrix_right=K,
        dist_right=dist,
        overall_residual=total,
        per_frame_residual=tuple(per_frame),
        solver_rms=float(rms),
        flags_value=cv_flags,
        frame_count=len(obj),
        image_size=tuple(image_size),
        rvecs=tuple(rvecs),
        tvecs=tuple(tvecs),
    )


def calibrate_stereo(
    correspondences: list[AcceptedCorrespondence],
    image_size: tuple[int, int],
    flags: CalibrationFlags | None = None,
    prior_left: tuple[np.ndarray, np.ndarray] | None = None,
    prior_right: tuple[np.ndarray, np.ndarray] | None = None,
    max_iterations: int = 100,
    epsilon: float = 1e-6,
) -> CalibrationResult:
    """
    Joint stereo calibration.

    Args:
        correspondences: Accepted stereo pairs
        image_size: Image dimensions (width, height)
        flags: Solver options (default: stereo policy)
        prior_left, prior_right: (K, dist) per camera, required with
            ``flags.fix_intrinsics`` and used as the starting point with
            ``flags.use_intrinsic_guess``. Without priors, the guess is
            estimated from the board homographies
        max_iterations: Maximum iterations for stereo calibration
        epsilon: Convergence epsilon

    Returns:
        CalibrationResult with R, T, E, F and epipolar residuals

    Raises:
        InsufficientDataError: Fewer than two pairs
        ValueError: Mismatched correspondences or missing priors
        NumericallyInvalidCalibrationError: Solver produced non-finite values
    """
    flags = flags or CalibrationFlags.stereo_default()
    _validate(correspondences, stereo=True)
    ensure_enough_correspondences(len(correspondences), stereo=True)

    if flags.fix_intrinsics and (prior_left is None or prior_right is None):
        raise ValueError("fix_intrinsics requires prior calibrations for both cameras")

    obj, img_left = _standardize_points(
        [c.world_points for c in correspondences], [c.left_corners for c in correspondences]
    )
    _, img_right = _standardize_points(
        [c.world_points for c in correspondences], [c.right_corners for c in correspondences]
    )

    if prior_left is not None and prior_right is not None:
        K1, d1 = (np.array(a, dtype=np.float64) for a in prior_left)
        K2, d2 = (np.array(a, dtype=np.float64) for a in prior_right)
    else:
        K1, d1 = _seed_intrinsics(flags, obj, img_left, image_size)
        K2, d2 = _seed_intrinsics(flags, obj, img_right, image_size)

    criteria = (cv2.TERM_CRITERIA_MAX_ITER + cv2.TERM_CRITERIA_EPS, max_iterations, epsilon)
    cv_flags = flags.to_cv_flags(stereo=True)

    logger.info(
        "Running stereo calibration with %d board pairs (flags=%d %s)...", len(obj), cv_flags, flags.summary(True)
    )
    rms, K1, d1, K2, d2, R, T, E, F = cv2.stereoCalibrate(
        obj,
        img_left,
        img_right,
        K1,
        d1,
        K2,
        d2,
        image_size,
        criteria=criteria,
        flags=cv_flags,
    )
    logger.info("Finished, with RMS error = %.6f", rms)

    _check_finite(camera_matrix_left=K1, dist_left=d1, camera_matrix_right=K2, dist_right=d2, R=R, T=T)

    mean_err, per_pair = epipolar_errors(img_left, img_right, K1, d1, K2, d2, F)
    logger.info("average epipolar err = %.6f", mean_err)
    logger.info("Baseline: %.4f", float(np.linalg.norm(T)))

    return CalibrationResult(
        camera_matrix_left=K1,
        dist_left=d1,
        camera_matrix_right=K2,
        dist_right=d2,
        R=R,
        T=T,
        E=E,
        F=F,
        overall_residual=mean_err,
        per_frame_residual=tuple(per_pair),
        solver_rms=float(rms),
        flags_value=cv_flags,
        frame_count=len(obj),
        image_size=tuple(image_size),
    )


def load_prior_intrinsics(
    left_path: str | Path, right_path: str | Path
) -> tuple[tuple[np.ndarray, np.ndarray], tuple[np.ndarray, np.ndarray]]:
    """Load per-camera (K, dist) from two single-camera calibration files."""
    from .io import load_intrinsics

    prior_left = load_intrinsics(left_path)
    prior_right = load_intrinsics(right_path)
    logger.info("Using individual calibration results %s and %s", left_path, right_path)
    return prior_left, prior_right
