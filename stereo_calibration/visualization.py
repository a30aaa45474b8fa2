"""
Diagnostic figures for calibration runs.

Every function takes ``mode``: 'save' writes ``output_path``, 'show' opens a
matplotlib window, 'both' does both.
"""

import logging
from pathlib import Path

import cv2
import matplotlib.pyplot as plt
import numpy as np
from matplotlib.patches import Polygon, Rectangle

from .data_structures import CalibrationResult, ImagePairRef, RectificationResult
from .rectification import rectify_image

logger = logging.getLogger(__name__)


def _finish(fig: plt.Figure, output_path: Path | None, mode: str) -> None:
    fig.tight_layout()
    if output_path is not None and mode != "show":
        target = Path(output_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(target, dpi=150, bbox_inches="tight")
    if mode == "save":
        plt.close(fig)
    else:
        plt.show()


def plot_rectification_preview(
    pair: ImagePairRef,
    rect: RectificationResult,
    n_guides: int = 10,
    output_path: Path | None = None,
    mode: str = "save",
) -> bool:
    """
    Rectify one stereo pair and draw it with row guides and valid regions.

    Matching features must sit on the same guide row in both halves.

    Args:
        pair: Stereo pair to preview
        rect: Rectification with remap tables
        n_guides: Number of evenly spaced guide rows
        output_path: Figure file
        mode: 'save', 'show' or 'both'

    Returns:
        False when either image cannot be read
    """
    views = [cv2.imread(str(p), cv2.IMREAD_COLOR) for p in pair.paths()]
    if any(v is None for v in views):
        logger.warning("Skipping rectification preview: cannot read %s", ", ".join(pair.paths()))
        return False

    rectified = [
        rectify_image(views[0], rect.map_left),
        rectify_image(views[1], rect.map_right),
    ]
    height = rectified[0].shape[0]
    rows = np.linspace(0, height - 1, num=max(2, n_guides)).astype(int)

    fig, axes = plt.subplots(1, 2, figsize=(16, 7), sharey=True)
    for axis, view, roi, side in zip(
        axes, rectified, (rect.roi_left, rect.roi_right), ("left", "right"), strict=True
    ):
        axis.imshow(view[..., ::-1])
        for row in rows:
            axis.axhline(row, color="yellow", linewidth=0.6, alpha=0.7)
        x, y, w, h = roi
        axis.add_patch(Rectangle((x, y), w, h, fill=False, edgecolor="red", linewidth=1.5))
        axis.set_title(f"{side} (rectified, alpha={rect.alpha:g})")
        axis.set_axis_off()

    _finish(fig, output_path, mode)
    return True


def plot_imagepoints_heatmap(
    imgpoints: list[np.ndarray],
    image_size: tuple[int, int],
    camera_name: str = "camera",
    output_path: Path | None = None,
    mode: str = "save",
    bins: int = 40,
) -> None:
    """
    Show how well the accepted boards cover the image.

    Left panel: corner density. Right panel: outline of every accepted board.

    Args:
        imgpoints: Corner arrays (Nx1x2) of the accepted frames
        image_size: (width, height)
        camera_name: Label used in titles and the log line
        output_path: Figure file
        mode: 'save', 'show' or 'both'
        bins: Histogram cells along each axis
    """
    if len(imgpoints) == 0:
        logger.info("No corners to plot for %s", camera_name)
        return

    width, height = image_size
    pts = np.concatenate([c.reshape(-1, 2) for c in imgpoints])

    density, _, _ = np.histogram2d(pts[:, 1], pts[:, 0], bins=bins, range=[[0, height], [0, width]])

    fig, (ax_density, ax_boards) = plt.subplots(1, 2, figsize=(14, 5))
    shown = ax_density.imshow(density, extent=(0, width, height, 0), cmap="magma", aspect="auto")
    fig.colorbar(shown, ax=ax_density, label="corners per cell")
    ax_density.set_title(f"{camera_name}: corner density ({len(pts)} corners)")

    for corners in imgpoints:
        hull = cv2.convexHull(corners.reshape(-1, 1, 2).astype(np.float32)).reshape(-1, 2)
        ax_boards.add_patch(Polygon(hull, closed=True, fill=False, linewidth=0.8))
    ax_boards.set_xlim(0, width)
    ax_boards.set_ylim(height, 0)
    ax_boards.set_aspect("equal")
    ax_boards.set_title(f"{camera_name}: {len(imgpoints)} board outlines")

    for axis in (ax_density, ax_boards):
        axis.set_xlabel("u [px]")
        axis.set_ylabel("v [px]")

    _finish(fig, output_path, mode)

    span_u = np.ptp(pts[:, 0]) / width * 100
    span_v = np.ptp(pts[:, 1]) / height * 100
    logger.info("%s corner coverage: %.1f%% horizontally, %.1f%% vertically", camera_name, span_u, span_v)


def plot_residuals(
    result: CalibrationResult,
    labels: list[str] | None = None,
    output_path: Path | None = None,
    mode: str = "save",
) -> None:
    """Bar chart of per-frame (mono) or per-pair (stereo) residuals with the overall mean."""
    values = list(result.per_frame_residual)
    if not values:
        logger.info("No residuals to plot")
        return

    kind = "Epipolar error" if result.is_stereo else "Reprojection RMS"
    positions = np.arange(len(values))
    fig, ax = plt.subplots(figsize=(max(6, 0.35 * len(values)), 5))
    ax.bar(positions, values, color="steelblue")
    ax.axhline(result.overall_residual, color="red", linestyle="--", label=f"overall {result.overall_residual:.3f} px")
    ax.set_xticks(positions)
    ax.set_xticklabels(labels if labels is not None else [str(i) for i in positions], rotation=90, fontsize=7)
    ax.set_ylabel(f"{kind} [px]")
    ax.set_title(f"{kind} per {'pair' if result.is_stereo else 'frame'}")
    ax.legend()
    _finish(fig, output_path, mode)
