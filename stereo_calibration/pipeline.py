"""
End-to-end calibration runs.

Stereo: image pairs -> correspondences -> stereo solve -> epipolar check ->
calibration file -> rectification (appended to the file) -> rectified review.
Mono: frames -> correspondences -> solve -> reprojection check -> calibration
file -> undistorted review.
"""

import logging
import os
import time
from pathlib import Path

import cv2

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
    CalibrationFlags,
    ImagePairRef,
)
from .detection import CorrespondenceCollector
from .errors import ImageListError
from .image_list import make_image_pairs
from .io import TIME_FORMAT, append_rectification, load_calibration, save_calibration
from .rectification import crop_to_roi, rectify_image, rectify_stereo, undistortion_maps
from .review import ReviewWindow

logger = logging.getLogger(__name__)


def _check_writable(output_path: Path) -> None:
    """Fail before any detection work if the calibration file cannot be written."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    target = output_path if output_path.exists() else output_path.parent
    if not os.access(target, os.W_OK):
        raise PermissionError(f"Output path is not writable: {output_path}")


def _save_figures(
    figures_dir: Path,
    used: list[AcceptedCorrespondence],
    good_pairs: list[ImagePairRef],
    artifact: CalibrationArtifact,
) -> None:
    from .visualization import plot_imagepoints_heatmap, plot_rectification_preview, plot_residuals

    figures_dir = Path(figures_dir)
    stereo = artifact.is_stereo
    labels = [Path(c.source.left_path).name for c in used]
    plot_residuals(artifact.result, labels=labels, output_path=figures_dir / "residuals.png")

    views = {"left": [c.left_corners for c in used]}
    if stereo:
        views["right"] = [c.right_corners for c in used]
    else:
        views = {"camera": views["left"]}
    for name, points in views.items():
        plot_imagepoints_heatmap(
            points, artifact.image_size, camera_name=name, output_path=figures_dir / f"coverage_{name}.png"
        )

    if stereo and artifact.rectification is not None and good_pairs:
        plot_rectification_preview(
            good_pairs[0], artifact.rectification, output_path=figures_dir / "rectification_preview.png"
        )
    logger.info("Diagnostic figures written to %s", figures_dir)


def run_stereo_calibration(
    images: list[str],
    board: BoardSpec,
    output_path: str | Path = "stereo_params.yaml",
    flags: CalibrationFlags | None = None,
    prior_left_path: str | Path | None = None,
    prior_right_path: str | Path | None = None,
    alpha: float = 1.0,
    review: ReviewWindow | None = None,
    show_rectified: bool = True,
    num_workers: int = 1,
    max_pairs: int = 0,
    figures_dir: str | Path | None = None,
) -> CalibrationArtifact:
    """
    Calibrate a stereo rig from an alternating left/right image list.

    Args:
        images: left01, right01, left02, right02, ...
        board: Board geometry
        output_path: Calibration file to write
        flags: Solver options (default: fix aspect ratio, zero tangential distortion)
        prior_left_path, prior_right_path: Single-camera calibration files.
            They are held fixed with ``flags.fix_intrinsics`` and used as the
            starting point with ``flags.use_intrinsic_guess``; with neither
            flag they are not used by the solver (a warning is logged)
        alpha: Rectification scaling (0 = valid pixels only, 1 = full view)
        review: Review window (headless when None)
        show_rectified: Step through rectified pairs after calibration
        num_workers: Parallel detection workers
        max_pairs: Cap on pairs passed to the solver (0 = all)
        figures_dir: Optional directory for diagnostic figures

    Returns:
        The persisted CalibrationArtifact including rectification

    Raises:
        ImageListError: Empty or odd-length list
        InsufficientDataError: Fewer than two accepted pairs
        NumericallyInvalidCalibrationError: Non-finite solution (nothing written)
        OSError: Output path not writable
    """
    flags = flags or CalibrationFlags.stereo_default()
    review = review or ReviewWindow(enabled=False)
    output_path = Path(output_path)

    pairs = make_image_pairs(images, stereo=True)
    _check_writable(output_path)

    prior_left = prior_right = None
    if prior_left_path is not None and prior_right_path is not None:
        prior_left, prior_right = load_prior_intrinsics(prior_left_path, prior_right_path)
        if not (flags.fix_intrinsics or flags.use_intrinsic_guess):
            logger.warning(
                "Prior calibrations given without fix_intrinsics or use_intrinsic_guess; "
                "the intrinsics are re-estimated from scratch"
            )
    elif flags.fix_intrinsics:
        raise ValueError("fix_intrinsics requires --prior-left and --prior-right calibration files")

    try:
        collector = CorrespondenceCollector(board, num_workers=num_workers, progress=not review.enabled)
        run = collector.collect_stereo(pairs, on_frame=review.collection_callback(board))
        ensure_enough_correspondences(run.num_accepted(), stereo=True)

        correspondences = run.accepted
        if max_pairs:
            correspondences = subsample_stereo_pairs(correspondences, run.image_size, max_pairs, prior_left=prior_left)

        result = calibrate_stereo(
            correspondences, run.image_size, flags, prior_left=prior_left, prior_right=prior_right
        )

        artifact = CalibrationArtifact(
            board=board,
            image_size=run.image_size,
            result=result,
            timestamp=time.strftime(TIME_FORMAT),
            flags_value=result.flags_value,
            flags_summary=flags.summary(stereo=True),
        )
        logger.info("Saving stereo calibration result to %s", output_path)
        save_calibration(artifact, output_path)

        rect = rectify_stereo(result, run.image_size, alpha=alpha)
        append_rectification(output_path, rect)
        artifact.rectification = rect

        if figures_dir is not None:
            _save_figures(Path(figures_dir), correspondences, run.good_pairs, artifact)

        if show_rectified:
            review.review_rectified(run.good_pairs, rect, run.image_size)
    finally:
        review.close()

    return artifact


def run_mono_calibration(
    images: list[str],
    board: BoardSpec,
    output_path: str | Path = "calib_result.yaml",
    flags: CalibrationFlags | None = None,
    target_frames: int = 15,
    review: ReviewWindow | None = None,
    show_undistorted: bool = True,
    num_workers: int = 1,
    figures_dir: str | Path | None = None,
) -> CalibrationArtifact:
    """
    Calibrate a single camera.

    Collection stops once ``target_frames`` frames are accepted; fewer (but at
    least the minimum) proceed with a warning.

    Returns:
        The persisted CalibrationArtifact
    """
    flags = flags or CalibrationFlags.mono_default()
    review = review or ReviewWindow(enabled=False)
    output_path = Path(output_path)

    frames = make_image_pairs(images, stereo=False)
    _check_writable(output_path)

    try:
        collector = CorrespondenceCollector(board, num_workers=num_workers, progress=not review.enabled)
        run = collector.collect_mono(
            frames, target_frames=target_frames, on_frame=review.collection_callback(board, target_frames)
        )
        ensure_enough_correspondences(run.num_accepted(), stereo=False, target=target_frames)

        result = calibrate_mono(run.accepted, run.image_size, flags)

        artifact = CalibrationArtifact(
            board=board,
            image_size=run.image_size,
            result=result,
            timestamp=time.strftime(TIME_FORMAT),
            flags_value=result.flags_value,
            flags_summary=flags.summary(),
        )
        save_calibration(artifact, output_path)

        if figures_dir is not None:
            _save_figures(Path(figures_dir), run.accepted, run.good_pairs, artifact)

        if show_undistorted:
            maps = undistortion_maps(result.camera_matrix_left, result.dist_left, run.image_size)
            review.review_undistorted(frames, maps)
    finally:
        review.close()

    return artifact


def list_images(folder: str | Path) -> list[str]:
    """List all image files in a folder."""
    exts = ("*.png", "*.jpg", "*.jpeg", "*.bmp", "*.tif", "*.tiff")
    files = []
    folder_path = Path(folder)
    for e in exts:
        files.extend(str(p) for p in folder_path.glob(e))
    files.sort()
    return files


def rectify_folders(
    calib_path: str | Path,
    left_dir: str | Path,
    right_dir: str | Path,
    out_left: str | Path,
    out_right: str | Path,
    crop: bool = True,
) -> int:
    """
    Rectify stereo image folders with a stored calibration.

    Images are paired by sorted order.

    Returns:
        Number of pairs written

    Raises:
        ValueError: If the calibration has no rectification block
        ImageListError: If a folder holds no images
    """
    artifact = load_calibration(calib_path, build_maps=True)
    if not artifact.has_rectification():
        raise ValueError(f"{calib_path} has no rectification parameters")
    rect = artifact.rectification

    Path(out_left).mkdir(parents=True, exist_ok=True)
    Path(out_right).mkdir(parents=True, exist_ok=True)

    left_imgs = list_images(left_dir)
    right_imgs = list_images(right_dir)

    if len(left_imgs) == 0 or len(right_imgs) == 0:
        raise ImageListError("No images found in one of the input folders.")

    if len(left_imgs) != len(right_imgs):
        logger.warning("Left (%d) and right (%d) counts differ. Proceeding by index.", len(left_imgs), len(right_imgs))

    written = 0
    for i, (l_path, r_path) in enumerate(zip(left_imgs, right_imgs, strict=False)):
        imgL = cv2.imread(l_path, cv2.IMREAD_COLOR)
        imgR = cv2.imread(r_path, cv2.IMREAD_COLOR)

        if imgL is None or imgR is None:
            logger.warning("Skipping pair %d: failed to read images.", i)
            continue

        rectL = rectify_image(imgL, rect.map_left)
        rectR = rectify_image(imgR, rect.map_right)
        if crop:
            rectL = crop_to_roi(rectL, rect.roi_left)
            rectR = crop_to_roi(rectR, rect.roi_right)

        cv2.imwrite(str(Path(out_left) / f"{Path(l_path).stem}_rect.png"), rectL)
        cv2.imwrite(str(Path(out_right) / f"{Path(r_path).stem}_rect.png"), rectR)
        written += 1

    logger.info("Saved %d rectified pairs to '%s' and '%s'.", written, out_left, out_right)
    return written
