"""
Chessboard detection and correspondence collection.

Detection runs as independent per-frame (or per-pair) tasks that return their
results by value. The collector merges them strictly in intake order and is the
only code that updates the run state.
"""

import logging
import multiprocessing as mp
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import cv2
import numpy as np
from tqdm.auto import tqdm

from .data_structures import AcceptedCorrespondence, BoardSpec, CalibrationRun, ImagePairRef
from .geometry import board_corner_positions

logger = logging.getLogger(__name__)

STEREO_DETECTION_FLAGS = cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE
MONO_DETECTION_FLAGS = cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_FAST_CHECK | cv2.CALIB_CB_NORMALIZE_IMAGE


@dataclass(frozen=True)
class SubpixelParams:
    """cornerSubPix settings: search window half-size, max iterations and epsilon."""

    window: tuple[int, int] = (11, 11)
    iterations: int = 30
    epsilon: float = 0.1

    def criteria(self) -> tuple[int, int, float]:
        return (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, self.iterations, self.epsilon)


@dataclass(frozen=True)
class FrameDetection:
    """
    Detection outcome for one image or image pair.

    Lists are indexed by camera (one entry for mono, two for stereo).

    Attributes:
        ref: Image reference that was processed
        loaded: Whether each image could be read
        sizes: (width, height) of each loaded image, None if unreadable
        corners: Refined Nx1x2 corners per image, None if not found
    """

    ref: ImagePairRef
    loaded: tuple[bool, ...]
    sizes: tuple[tuple[int, int] | None, ...]
    corners: tuple[np.ndarray | None, ...]

    @property
    def all_loaded(self) -> bool:
        return all(self.loaded)

    @property
    def all_found(self) -> bool:
        return all(c is not None for c in self.corners)


def detect_corners(
    image: np.ndarray,
    board: BoardSpec,
    flags: int = STEREO_DETECTION_FLAGS,
    subpixel: SubpixelParams = SubpixelParams(),
) -> np.ndarray | None:
    """
    Find and refine the inner corners of a chessboard.

    Args:
        image: BGR or grayscale image
        board: Board geometry
        flags: findChessboardCorners flags
        subpixel: Sub-pixel refinement settings

    Returns:
        Nx1x2 float32 corners in row-major scan order, or None if the board was
        not found with exactly the expected number of corners
    """
    gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    found, corners = cv2.findChessboardCorners(gray, board.pattern_size, flags=flags)
    if not found or corners is None or len(corners) != board.corner_count:
        return None

    corners = corners.astype(np.float32, copy=False)
    corners = cv2.cornerSubPix(gray, corners, subpixel.window, (-1, -1), subpixel.criteria())
    return corners.reshape(-1, 1, 2)


def _detect_frame(args: tuple[Any, ...]) -> FrameDetection:
    """
    Worker function for per-frame detection.

    Args:
        args: Tuple of (ImagePairRef, BoardSpec, detection flags, SubpixelParams)

    Returns:
        FrameDetection for the reference
    """
    ref, board, flags, subpixel = args

    loaded = []
    sizes = []
    corners = []
    for path in ref.paths():
        img = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if img is None:
            loaded.append(False)
            sizes.append(None)
            corners.append(None)
            continue
        loaded.append(True)
        sizes.append((img.shape[1], img.shape[0]))
        corners.append(detect_corners(img, board, flags, subpixel))

    return FrameDetection(ref=ref, loaded=tuple(loaded), sizes=tuple(sizes), corners=tuple(corners))


# Callback invoked after each frame: (detection, accepted, run) -> keep going?
FrameCallback = Callable[[FrameDetection, bool, CalibrationRun], bool]


class CorrespondenceCollector:
    """
    Collects chessboard correspondences over an ordered image list.

    Args:
        board: Board geometry
        num_workers: Parallel detection workers (-1 = all cores, 1 = serial)
        progress: Show a progress bar
        subpixel: Sub-pixel refinement settings
        detection_flags: Override for findChessboardCorners flags
    """

    def __init__(
        self,
        board: BoardSpec,
        num_workers: int = 1,
        progress: bool = False,
        subpixel: SubpixelParams = SubpixelParams(),
        detection_flags: int | None = None,
    ):
        self.board = board
        self.num_workers = mp.cpu_count() if num_workers == -1 else max(1, num_workers)
        self.progress = progress
        self.subpixel = subpixel
        self.detection_flags = detection_flags
        self._world_template = board_corner_positions(board)

    def collect_stereo(self, pairs: list[ImagePairRef], on_frame: FrameCallback | None = None) -> CalibrationRun:
        """
        Collect correspondences from left/right image pairs.

        A pair is accepted only if both images load, match the run's image size
        and yield a full corner detection.

        Args:
            pairs: Image pairs in intake order
            on_frame: Called after each pair; returning False stops collection

        Returns:
            CalibrationRun with accepted correspondences and the good-pair list
        """
        flags = STEREO_DETECTION_FLAGS if self.detection_flags is None else self.detection_flags
        run = self._collect(pairs, flags, on_frame, target=None, desc="Detecting pairs")
        logger.info("%d pairs have been successfully detected (%d skipped)", run.num_accepted(), run.skipped)
        return run

    def collect_mono(
        self, frames: list[ImagePairRef], target_frames: int | None = None, on_frame: FrameCallback | None = None
    ) -> CalibrationRun:
        """
        Collect correspondences from single-camera frames.

        Collection stops once ``target_frames`` frames are accepted.
        """
        flags = MONO_DETECTION_FLAGS if self.detection_flags is None else self.detection_flags
        run = self._collect(frames, flags, on_frame, target=target_frames, desc="Detecting frames")
        logger.info("%d frames have been successfully detected (%d skipped)", run.num_accepted(), run.skipped)
        return run

    def _detections(self, refs: list[ImagePairRef], flags: int, desc: str) -> Iterable[FrameDetection]:
        args_list = [(ref, self.board, flags, self.subpixel) for ref in refs]

        if self.num_workers == 1:
            iterator = (_detect_frame(args) for args in args_list)
            if self.progress:
                iterator = tqdm(iterator, total=len(args_list), desc=desc)
            yield from iterator
            return

        # imap keeps intake order; leaving the block terminates outstanding work
        with mp.Pool(self.num_workers) as pool:
            iterator = pool.imap(_detect_frame, args_list)
            if self.progress:
                iterator = tqdm(iterator, total=len(args_list), desc=desc)
            yield from iterator

    def _collect(
        self,
        refs: list[ImagePairRef],
        flags: int,
        on_frame: FrameCallback | None,
        target: int | None,
        desc: str,
    ) -> CalibrationRun:
        run = CalibrationRun(board=self.board)
        detections = self._detections(refs, flags, desc)
        try:
            for det in detections:
                run.processed += 1
                accepted = self._merge(run, det)
                if not accepted:
                    run.skipped += 1

                if on_frame is not None and not on_frame(det, accepted, run):
                    run.stopped_early = True
                    logger.info("Collection stopped by operator after %d frames", run.processed)
                    break
                if target is not None and run.num_accepted() >= target:
                    break
        finally:
            detections.close()
        return run

    def _merge(self, run: CalibrationRun, det: FrameDetection) -> bool:
        """Apply the acceptance rules to one detection and record it if accepted."""
        names = det.ref.paths()

        for name, ok, size in zip(names, det.loaded, det.sizes, strict=True):
            if not ok:
                logger.warning("Cannot read image %s. Skipping frame %d.", name, det.ref.index)
                return False
            if run.image_size is None:
                run.image_size = size
            elif size != run.image_size:
                logger.warning(
                    "The image %s has size %s, different from the first image %s. Skipping frame %d.",
                    name,
                    size,
                    run.image_size,
                    det.ref.index,
                )
                return False

        for name, corners in zip(names, det.corners, strict=True):
            if corners is None:
                logger.warning("Failed to detect corners in %s", name)
                return False

        left = det.corners[0]
        right = det.corners[1] if det.ref.is_pair else None
        run.accepted.append(
            AcceptedCorrespondence(
                left_corners=left,
                right_corners=right,
                world_points=self._world_template.copy(),
                source=det.ref,
            )
        )
        run.good_pairs.append(det.ref)
        logger.debug("Detected corners in %s", ", ".join(names))
        return True
