"""
Interactive review windows.

Shows detections while correspondences are collected, and the rectified (or
undistorted) images afterwards. The operator can end collection early with
q/Q/ESC; that is the only blocking point of the pipeline.
"""

import logging

import cv2
import numpy as np

from .data_structures import BoardSpec, CalibrationRun, ImagePairRef, RectificationResult
from .detection import FrameCallback, FrameDetection
from .rectification import rectify_image

logger = logging.getLogger(__name__)

ESC_KEY = 27
QUIT_KEYS = {ESC_KEY, ord("q"), ord("Q")}

COLLECTION_WINDOW = "searching for corners..."
RECTIFIED_WINDOW = "rectified"
UNDISTORTED_WINDOW = "undistorted"


def is_quit_key(key: int) -> bool:
    return key != -1 and (key & 0xFF) in QUIT_KEYS


def _as_bgr(img: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR) if img.ndim == 2 else img


def merge_images(
    img_left: np.ndarray | None,
    img_right: np.ndarray | None,
    image_size: tuple[int, int],
    max_side: int = 600,
) -> np.ndarray:
    """
    Put two images side by side on one canvas.

    Both are scaled so the larger of width/height becomes ``max_side``. A
    missing image leaves its half black.

    Args:
        img_left, img_right: Images (BGR or gray), or None
        image_size: (width, height) of the source images
        max_side: Target size of the larger dimension

    Returns:
        BGR canvas of shape (h, 2w, 3)
    """
    sf = max_side / max(image_size)
    w = int(round(image_size[0] * sf))
    h = int(round(image_size[1] * sf))
    canvas = np.zeros((h, 2 * w, 3), dtype=np.uint8)
    for k, img in enumerate((img_left, img_right)):
        if img is None:
            continue
        canvas[:, k * w : (k + 1) * w] = cv2.resize(_as_bgr(img), (w, h), interpolation=cv2.INTER_LINEAR)
    return canvas


def draw_rectified_pair(
    img_left: np.ndarray,
    img_right: np.ndarray,
    rect: RectificationResult,
    image_size: tuple[int, int],
    line_spacing: int = 16,
) -> np.ndarray:
    """
    Rectify a pair and draw guides on the merged view.

    Valid regions are outlined in red when alpha is non-zero (black borders
    exist), and green horizontal lines make row alignment easy to check.
    """
    if not rect.has_maps():
        raise ValueError("Rectification result has no remap tables")

    views = []
    for img, maps, roi in ((img_left, rect.map_left, rect.roi_left), (img_right, rect.map_right, rect.roi_right)):
        rectified = _as_bgr(rectify_image(img, maps)).copy()
        if rect.alpha != 0:
            x, y, w, h = roi
            cv2.rectangle(rectified, (x, y), (x + w, y + h), (0, 0, 255), 3, cv2.LINE_8)
        views.append(rectified)

    canvas = merge_images(views[0], views[1], image_size)
    for j in range(0, canvas.shape[0], line_spacing):
        cv2.line(canvas, (0, j), (canvas.shape[1], j), (0, 255, 0), 1, cv2.LINE_8)
    return canvas


class ReviewWindow:
    """
    OpenCV window driven by the calibration pipeline.

    Args:
        enabled: Open windows and wait for keys; when False every call is a no-op
        delay_ms: Pause between frames during collection
    """

    def __init__(self, enabled: bool = True, delay_ms: int = 300):
        self.enabled = enabled
        self.delay_ms = delay_ms

    def show(self, name: str, canvas: np.ndarray, delay_ms: int) -> int:
        """Display a canvas and return the key pressed (-1 for none)."""
        if not self.enabled:
            return -1
        cv2.imshow(name, canvas)
        return cv2.waitKey(delay_ms)

    def close(self) -> None:
        if self.enabled:
            cv2.destroyAllWindows()

    def collection_callback(self, board: BoardSpec, target: int | None = None) -> FrameCallback | None:
        """
        Build the per-frame callback for the correspondence collector.

        Returns None when the window is disabled so the collector does not
        reload images only to discard them.
        """
        if not self.enabled:
            return None

        def on_frame(det: FrameDetection, accepted: bool, run: CalibrationRun) -> bool:
            images = []
            for path, corners in zip(det.ref.paths(), det.corners, strict=True):
                img = cv2.imread(str(path), cv2.IMREAD_COLOR)
                if img is not None and corners is not None:
                    cv2.drawChessboardCorners(img, board.pattern_size, corners, True)
                images.append(img)

            size = run.image_size or next(((i.shape[1], i.shape[0]) for i in images if i is not None), None)
            if size is None:
                return True

            if det.ref.is_pair:
                canvas = merge_images(images[0], images[1], size)
            else:
                if images[0] is not None:
                    canvas = _as_bgr(images[0]).copy()
                else:
                    canvas = np.zeros((size[1], size[0], 3), np.uint8)
                if target:
                    msg = f"{run.num_accepted()}/{target}"
                    (tw, _), baseline = cv2.getTextSize(msg, cv2.FONT_HERSHEY_PLAIN, 1, 1)
                    origin = (canvas.shape[1] - 2 * tw - 10, canvas.shape[0] - 2 * baseline - 10)
                    cv2.putText(canvas, msg, origin, cv2.FONT_HERSHEY_PLAIN, 1, (0, 255, 0))

            key = self.show(COLLECTION_WINDOW, canvas, self.delay_ms)
            # any other key only skips the remaining delay
            return not is_quit_key(key)

        return on_frame

    def review_rectified(
        self, good_pairs: list[ImagePairRef], rect: RectificationResult, image_size: tuple[int, int]
    ) -> int:
        """
        Step through rectified pairs, waiting for a key after each.

        Returns:
            Number of pairs shown
        """
        if not self.enabled:
            return 0
        shown = 0
        for ref in good_pairs:
            img_left = cv2.imread(ref.left_path, cv2.IMREAD_COLOR)
            img_right = cv2.imread(ref.right_path, cv2.IMREAD_COLOR)
            if img_left is None or img_right is None:
                logger.warning("Cannot read pair %d for rectified preview", ref.index)
                continue
            canvas = draw_rectified_pair(img_left, img_right, rect, image_size)
            shown += 1
            if is_quit_key(self.show(RECTIFIED_WINDOW, canvas, 0)):
                break
        return shown

    def review_undistorted(self, frames: list[ImagePairRef], maps: tuple[np.ndarray, np.ndarray]) -> int:
        """Show each original frame next to its undistorted version."""
        if not self.enabled:
            return 0
        shown = 0
        for ref in frames:
            view = cv2.imread(ref.left_path, cv2.IMREAD_COLOR)
            if view is None:
                continue
            size = (view.shape[1], view.shape[0])
            canvas = merge_images(view, rectify_image(view, maps), size)
            shown += 1
            if is_quit_key(self.show(UNDISTORTED_WINDOW, canvas, 0)):
                break
        return shown
