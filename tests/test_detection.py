"""
Tests for chessboard detection and correspondence collection.

Run with: pytest tests/test_detection.py
"""

import cv2
import numpy as np
import pytest

from stereo_calibration.data_structures import CameraIndex
from stereo_calibration.detection import CorrespondenceCollector, detect_corners
from stereo_calibration.image_list import make_image_pairs


def test_detect_corners_on_rendered_view(board, stereo_images):
    """Test a full set of refined corners is found."""
    img = cv2.imread(stereo_images[0])
    corners = detect_corners(img, board)
    assert corners is not None
    assert corners.shape == (30, 1, 2)
    assert corners.dtype == np.float32


def test_detect_corners_blank_image(board):
    """Test that an image without a board yields None."""
    assert detect_corners(np.full((480, 640), 128, np.uint8), board) is None


def test_collect_stereo_accepts_all_pairs(board, stereo_images):
    """Test every rendered pair is accepted with aligned lists."""
    run = CorrespondenceCollector(board).collect_stereo(make_image_pairs(stereo_images, stereo=True))

    assert run.num_accepted() == 8
    assert run.processed == 8
    assert run.skipped == 0
    assert run.image_size == (640, 480)
    assert [p.index for p in run.good_pairs] == list(range(8))
    assert len(run.image_points(CameraIndex.LEFT)) == len(run.image_points(CameraIndex.RIGHT)) == 8
    for c in run.accepted:
        assert len(c.left_corners) == len(c.right_corners) == len(c.world_points) == 30


def test_world_points_identical_across_pairs(board, stereo_images):
    """Test every accepted pair carries the same world points."""
    run = CorrespondenceCollector(board).collect_stereo(make_image_pairs(stereo_images[:6], stereo=True))
    first = run.object_points()[0]
    assert all(np.array_equal(first, o) for o in run.object_points())


def test_size_mismatch_is_skipped(tmp_path, board, stereo_images):
    """Test a pair whose size differs from the first image is dropped and the run continues."""
    small = tmp_path / "small.png"
    img = cv2.imread(stereo_images[3])
    cv2.imwrite(str(small), cv2.resize(img, (320, 240)))
    images = list(stereo_images)
    images[3] = str(small)

    run = CorrespondenceCollector(board).collect_stereo(make_image_pairs(images, stereo=True))

    assert run.num_accepted() == 7
    assert run.skipped == 1
    assert 1 not in [p.index for p in run.good_pairs]
    assert run.image_size == (640, 480)


def test_unreadable_pair_is_skipped(tmp_path, board, stereo_images):
    """Test a missing image drops its pair only."""
    images = list(stereo_images)
    images[0] = str(tmp_path / "missing.png")

    run = CorrespondenceCollector(board).collect_stereo(make_image_pairs(images, stereo=True))

    assert run.num_accepted() == 7
    assert run.good_pairs[0].index == 1


def test_one_sided_detection_is_discarded(tmp_path, board, stereo_images):
    """Test a pair whose right view has no board contributes nothing."""
    blank = tmp_path / "blank.png"
    cv2.imwrite(str(blank), np.full((480, 640), 128, np.uint8))
    images = list(stereo_images)
    images[5] = str(blank)

    run = CorrespondenceCollector(board).collect_stereo(make_image_pairs(images, stereo=True))

    assert run.num_accepted() == 7
    assert 2 not in [p.index for p in run.good_pairs]
    assert all(c.right_corners is not None for c in run.accepted)


def test_collection_is_idempotent(board, stereo_images):
    """Test two runs over the same list give identical correspondences."""
    pairs = make_image_pairs(stereo_images[:6], stereo=True)
    first = CorrespondenceCollector(board).collect_stereo(pairs)
    second = CorrespondenceCollector(board).collect_stereo(pairs)

    assert first.num_accepted() == second.num_accepted()
    for a, b in zip(first.accepted, second.accepted, strict=True):
        assert np.array_equal(a.left_corners, b.left_corners)
        assert np.array_equal(a.right_corners, b.right_corners)


def test_parallel_matches_serial(board, stereo_images):
    """Test worker-pool detection keeps intake order and results."""
    pairs = make_image_pairs(stereo_images, stereo=True)
    serial = CorrespondenceCollector(board, num_workers=1).collect_stereo(pairs)
    parallel = CorrespondenceCollector(board, num_workers=2).collect_stereo(pairs)

    assert [p.index for p in parallel.good_pairs] == [p.index for p in serial.good_pairs]
    for a, b in zip(serial.accepted, parallel.accepted, strict=True):
        assert np.allclose(a.left_corners, b.left_corners)


def test_mono_stops_at_target(board, mono_images):
    """Test mono collection ends once the target frame count is reached."""
    frames = make_image_pairs(mono_images, stereo=False)
    run = CorrespondenceCollector(board).collect_mono(frames, target_frames=3)

    assert run.num_accepted() == 3
    assert run.processed == 3
    assert all(c.right_corners is None for c in run.accepted)


def test_callback_can_stop_collection(board, stereo_images):
    """Test returning False from the frame callback ends collection early."""
    seen = []

    def on_frame(det, accepted, run):
        seen.append(det.ref.index)
        return len(seen) < 2

    run = CorrespondenceCollector(board).collect_stereo(make_image_pairs(stereo_images, stereo=True), on_frame)

    assert seen == [0, 1]
    assert run.stopped_early
    assert run.num_accepted() == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
