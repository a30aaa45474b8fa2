"""
Tests for data structures, solver flags, calibration and quality metrics.

Run with: pytest tests/test_calibration.py
"""

import dataclasses
import logging
from pathlib import Path

import cv2
import numpy as np
import pytest

from stereo_calibration import calibration
from stereo_calibration.calibration import (
    calibrate_mono,
    calibrate_stereo,
    ensure_enough_correspondences,
    subsample_stereo_pairs,
)
from stereo_calibration.data_structures import (
    CalibrationConfig,
    CalibrationFlags,
    CalibrationResult,
    CalibrationRun,
    CameraIndex,
    ImagePairRef,
)
from stereo_calibration.errors import InsufficientDataError, NumericallyInvalidCalibrationError
from stereo_calibration.quality import epipolar_errors, reprojection_errors

CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "stereo_calib.yaml"


def test_camera_index_enum():
    """Test CameraIndex enum values."""
    assert CameraIndex.LEFT == 0
    assert CameraIndex.RIGHT == 1


def test_calibration_run_init(board):
    """Test CalibrationRun starts empty."""
    run = CalibrationRun(board=board)
    assert run.num_accepted() == 0
    assert run.image_size is None
    assert not run.stopped_early


def test_calibration_result_mono_has_no_extrinsics():
    """Test a mono result is not stereo and has no baseline."""
    result = CalibrationResult(np.eye(3), np.zeros(5), np.eye(3), np.zeros(5))
    assert not result.is_stereo
    assert result.baseline is None


def test_stereo_default_flags():
    """Test the stereo policy bitmask."""
    flags = CalibrationFlags.stereo_default()
    expected = cv2.CALIB_FIX_ASPECT_RATIO | cv2.CALIB_ZERO_TANGENT_DIST | cv2.CALIB_FIX_K4 | cv2.CALIB_FIX_K5
    assert flags.to_cv_flags(stereo=True) == expected
    assert "fix_aspect_ratio" in flags.summary(stereo=True)
    assert "fix_principal_point" not in flags.summary(stereo=True)


def test_mono_default_flags_fix_principal_point():
    """Test the mono policy keeps the principal point fixed."""
    flags = CalibrationFlags.mono_default()
    assert flags.to_cv_flags() & cv2.CALIB_FIX_PRINCIPAL_POINT
    assert "+fix_principal_point" in flags.summary()


def test_fix_intrinsics_flag():
    """Test holding intrinsics fixed maps to CALIB_FIX_INTRINSIC only."""
    flags = CalibrationFlags(fix_intrinsics=True)
    assert flags.to_cv_flags(stereo=True) == cv2.CALIB_FIX_INTRINSIC
    assert flags.summary(stereo=True) == "+fix_intrinsic"


def test_flags_from_dict():
    """Test config mappings override the base flags."""
    flags = CalibrationFlags.from_dict({"fix_aspect_ratio": False}, CalibrationFlags.stereo_default())
    assert not flags.fix_aspect_ratio
    assert flags.zero_tangential_distortion


def test_flags_from_dict_rejects_unknown():
    """Test a misspelled flag is reported."""
    with pytest.raises(ValueError, match="fix_aspect"):
        CalibrationFlags.from_dict({"fix_aspect": True})


def test_config_from_yaml():
    """Test loading the shipped configuration."""
    config = CalibrationConfig.from_yaml(CONFIG_PATH)
    assert config.board.pattern_size == (6, 5)
    assert config.get("board.square_size") == 30.0
    assert config.min_frames == 15
    assert config.review_delay_ms(stereo=False) == 800
    assert config.mono_flags.fix_principal_point


def test_config_set_and_defaults():
    """Test dot-notation overrides and defaults of an empty config."""
    config = CalibrationConfig()
    assert config.get("board.width") is None
    assert config.rectify_alpha == 1.0
    config.set("board.width", 9)
    config.set("rectification.alpha", 0.0)
    assert config.board.corners_per_row == 9
    assert config.rectify_alpha == 0.0


def test_ensure_enough_stereo_pairs():
    """Test a single pair is rejected."""
    with pytest.raises(InsufficientDataError) as exc:
        ensure_enough_correspondences(1, stereo=True)
    assert exc.value.accepted == 1
    assert exc.value.required == 2
    ensure_enough_correspondences(2, stereo=True)


def test_ensure_enough_mono_frames_warns_below_target(caplog):
    """Test fewer than the target frames proceed with a warning."""
    with pytest.raises(InsufficientDataError):
        ensure_enough_correspondences(2, stereo=False)
    with caplog.at_level(logging.WARNING):
        ensure_enough_correspondences(5, stereo=False, target=15)
    assert "target 15" in caplog.text


def test_single_pair_fails_before_solver(monkeypatch, projected_correspondences):
    """Test too few pairs raise without invoking stereoCalibrate."""

    def fail(*args, **kwargs):
        raise AssertionError("solver must not be called")

    monkeypatch.setattr(calibration.cv2, "stereoCalibrate", fail)
    with pytest.raises(InsufficientDataError):
        calibrate_stereo(projected_correspondences[:1], (640, 480))


def test_non_finite_solution_is_rejected(monkeypatch, projected_correspondences):
    """Test NaN parameters from the solver surface as an error."""

    def fake_stereo_calibrate(obj, img_l, img_r, K1, d1, K2, d2, size, criteria=None, flags=0):
        bad = np.eye(3)
        bad[0, 0] = np.nan
        return 0.1, bad, d1, K2, d2, np.eye(3), np.zeros((3, 1)), np.eye(3), np.eye(3)

    monkeypatch.setattr(calibration.cv2, "stereoCalibrate", fake_stereo_calibrate)
    with pytest.raises(NumericallyInvalidCalibrationError):
        calibrate_stereo(projected_correspondences, (640, 480))


def test_mismatched_point_counts_rejected(projected_correspondences):
    """Test image points must match world points."""
    first = projected_correspondences[0]
    broken = dataclasses.replace(first, right_corners=first.right_corners[:10])
    with pytest.raises(ValueError):
        calibrate_stereo([broken, *projected_correspondences[1:]], (640, 480))


def test_calibrate_mono_recovers_intrinsics(projected_correspondences, intrinsics):
    """Test focal length within 1% from exact correspondences."""
    K_true, _ = intrinsics
    result = calibrate_mono(projected_correspondences, (640, 480))

    assert not result.is_stereo
    assert result.frame_count == 8
    assert abs(result.camera_matrix_left[0, 0] - K_true[0, 0]) / K_true[0, 0] < 0.01
    assert abs(result.camera_matrix_left[1, 1] - K_true[1, 1]) / K_true[1, 1] < 0.01
    assert result.overall_residual < 0.1
    assert len(result.per_frame_residual) == 8
    assert len(result.rvecs) == 8


def test_calibrate_stereo_recovers_rig(projected_correspondences, intrinsics):
    """Test intrinsics within 1% and the 60 mm baseline from exact correspondences."""
    K_true, _ = intrinsics
    result = calibrate_stereo(projected_correspondences, (640, 480))

    assert result.is_stereo
    for K in (result.camera_matrix_left, result.camera_matrix_right):
        assert abs(K[0, 0] - K_true[0, 0]) / K_true[0, 0] < 0.01
        assert abs(K[0, 2] - K_true[0, 2]) / K_true[0, 2] < 0.01
    assert result.baseline == pytest.approx(60.0, rel=0.01)
    assert result.T.ravel()[0] < 0
    assert result.overall_residual < 0.05
    assert len(result.per_frame_residual) == 8


def test_fix_intrinsics_keeps_prior_matrices(projected_correspondences, intrinsics):
    """Test the prior workflow leaves camera matrices untouched."""
    K_true, dist = intrinsics
    prior = (K_true.copy(), dist.copy())
    result = calibrate_stereo(
        projected_correspondences,
        (640, 480),
        CalibrationFlags(fix_intrinsics=True),
        prior_left=prior,
        prior_right=prior,
    )

    assert np.allclose(result.camera_matrix_left, K_true)
    assert np.allclose(result.camera_matrix_right, K_true)
    assert result.flags_value == cv2.CALIB_FIX_INTRINSIC
    assert result.baseline == pytest.approx(60.0, rel=0.01)


def test_fix_intrinsics_requires_priors(projected_correspondences):
    """Test fixing intrinsics without priors is rejected."""
    with pytest.raises(ValueError):
        calibrate_stereo(projected_correspondences, (640, 480), CalibrationFlags(fix_intrinsics=True))


def test_intrinsic_guess_without_priors_stereo(projected_correspondences, intrinsics):
    """Test the intrinsic-guess option estimates its own starting camera matrices."""
    K_true, _ = intrinsics
    flags = CalibrationFlags(use_intrinsic_guess=True)
    result = calibrate_stereo(projected_correspondences, (640, 480), flags)

    assert result.flags_value & cv2.CALIB_USE_INTRINSIC_GUESS
    for K in (result.camera_matrix_left, result.camera_matrix_right):
        assert abs(K[0, 0] - K_true[0, 0]) / K_true[0, 0] < 0.01
        assert abs(K[1, 1] - K_true[1, 1]) / K_true[1, 1] < 0.01
    assert result.baseline == pytest.approx(60.0, rel=0.01)


def test_intrinsic_guess_without_priors_mono(projected_correspondences, intrinsics):
    """Test a mono run with the intrinsic-guess option recovers the focal length."""
    K_true, _ = intrinsics
    flags = dataclasses.replace(CalibrationFlags.mono_default(), use_intrinsic_guess=True)
    result = calibrate_mono(projected_correspondences, (640, 480), flags)

    assert abs(result.camera_matrix_left[0, 0] - K_true[0, 0]) / K_true[0, 0] < 0.01
    assert result.camera_matrix_left[0, 2] == pytest.approx(K_true[0, 2], rel=0.01)
    assert result.overall_residual < 0.1


def test_subsample_stereo_pairs(projected_correspondences, intrinsics):
    """Test the cap on pairs keeps intake order."""
    selected = subsample_stereo_pairs(projected_correspondences, (640, 480), max_pairs=3, prior_left=intrinsics)
    assert len(selected) == 3
    indices = [c.source.index for c in selected]
    assert indices == sorted(indices)

    assert subsample_stereo_pairs(projected_correspondences, (640, 480), max_pairs=0) is projected_correspondences


def _near_identical_pairs(correspondence, count):
    """Copies of one pair, each shifted by a hundredth of a pixel more than the last."""
    pairs = []
    for i in range(count):
        pairs.append(
            dataclasses.replace(
                correspondence,
                left_corners=correspondence.left_corners + 0.01 * i,
                right_corners=correspondence.right_corners + 0.01 * i,
                source=ImagePairRef(f"left{i + 1:02d}.png", f"right{i + 1:02d}.png", i),
            )
        )
    return pairs


def test_subsample_fills_cap_when_poses_are_similar(projected_correspondences, intrinsics):
    """Test similar poses still yield max_pairs pairs, the first ones in intake order."""
    pairs = _near_identical_pairs(projected_correspondences[0], 8)

    selected = subsample_stereo_pairs(pairs, (640, 480), max_pairs=4, prior_left=intrinsics)

    assert [c.source.index for c in selected] == [0, 1, 2, 3]


def test_subsample_mixes_diverse_and_filled_pairs(projected_correspondences, intrinsics):
    """Test diverse pairs are kept first and the rest of the cap is filled in order."""
    pairs = [*_near_identical_pairs(projected_correspondences[0], 4), projected_correspondences[1]]

    selected = subsample_stereo_pairs(pairs, (640, 480), max_pairs=3, prior_left=intrinsics)

    assert [c.source for c in selected] == [pairs[0].source, pairs[1].source, pairs[4].source]


def test_subsample_never_goes_below_stereo_minimum(projected_correspondences, intrinsics):
    """Test a cap of one pair still keeps enough pairs to calibrate."""
    selected = subsample_stereo_pairs(projected_correspondences, (640, 480), max_pairs=1, prior_left=intrinsics)
    assert len(selected) == 2


def test_reprojection_errors_zero_for_exact_poses(projected_correspondences, intrinsics):
    """Test residuals vanish when points are projected with the true model."""
    K, dist = intrinsics
    obj = [c.world_points for c in projected_correspondences]
    img = [c.left_corners for c in projected_correspondences]
    rvecs, tvecs = [], []
    for o, i in zip(obj, img, strict=True):
        _, rvec, tvec = cv2.solvePnP(o, i, K, dist)
        rvecs.append(rvec)
        tvecs.append(tvec)

    total, per_frame = reprojection_errors(obj, img, rvecs, tvecs, K, dist)
    assert total < 0.01
    assert len(per_frame) == len(obj)


def test_epipolar_errors_zero_for_true_geometry(projected_correspondences, intrinsics):
    """Test the symmetric epipolar distance vanishes for the true fundamental matrix."""
    K, dist = intrinsics
    tx, ty, tz = -60.0, 0.0, 0.0
    E = np.array([[0, -tz, ty], [tz, 0, -tx], [-ty, tx, 0]])
    K_inv = np.linalg.inv(K)
    F = K_inv.T @ E @ K_inv

    mean, per_pair = epipolar_errors(
        [c.left_corners for c in projected_correspondences],
        [c.right_corners for c in projected_correspondences],
        K,
        dist,
        K,
        dist,
        F,
    )
    assert mean < 0.01
    assert len(per_pair) == len(projected_correspondences)


def test_epipolar_errors_detect_vertical_offset(projected_correspondences, intrinsics):
    """Test a 2 px vertical shift of the right view shows up as ~4 px symmetric error."""
    K, dist = intrinsics
    E = np.array([[0, 0, 0], [0, 0, 60.0], [0, -60.0, 0]])
    K_inv = np.linalg.inv(K)
    F = K_inv.T @ E @ K_inv
    shifted = [c.right_corners + np.array([0, 2.0], dtype=np.float32) for c in projected_correspondences]

    mean, _ = epipolar_errors(
        [c.left_corners for c in projected_correspondences], shifted, K, dist, K, dist, F
    )
    assert mean == pytest.approx(4.0, abs=0.1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
