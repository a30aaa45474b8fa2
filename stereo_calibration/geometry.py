"""
Chessboard pattern geometry.

World coordinates of the inner corners in pattern space and a printable target
generator.
"""

import numpy as np

from .data_structures import BoardSpec


def board_corner_positions(board: BoardSpec) -> np.ndarray:
    """
    Compute the 3D coordinates of the inner corners in pattern space.

    Points follow the detector's row-major scan order: point ``k = i * cols + j``
    (row ``i``, column ``j``) lies at ``(j * square, i * square, 0)``.

    Args:
        board: Board geometry

    Returns:
        Nx3 float32 array with z = 0 for every point
    """
    cols, rows = board.pattern_size
    objp = np.zeros((rows * cols, 3), np.float32)
    objp[:, :2] = np.mgrid[0:cols, 0:rows].T.reshape(-1, 2)
    objp *= np.float32(board.square_size)
    return objp


def generate_chessboard(
    board_width: int,
    board_height: int,
    square_px: int | None = None,
    margin_px: int | None = None,
    paper_size: tuple[int, int] = (630, 891),
) -> np.ndarray:
    """
    Render a printable chessboard target.

    The board has ``board_width + 1`` by ``board_height + 1`` squares so that it
    exposes exactly ``board_width x board_height`` inner corners. The top-left
    square is black and the board is surrounded by a white margin, which the
    corner detector needs.

    Args:
        board_width: Inner corners per row
        board_height: Inner corners per column
        square_px: Square side in pixels (default: fit ``paper_size``)
        margin_px: White border in pixels (default: one square)
        paper_size: (width, height) used to size squares when square_px is None.
            The default is A4 at 3 px/mm.

    Returns:
        Grayscale uint8 image
    """
    if board_width < 2 or board_height < 2:
        raise ValueError("Board needs at least 2x2 inner corners")

    n_cols = board_width + 1
    n_rows = board_height + 1
    if square_px is None:
        square_px = min(paper_size[0] // (n_cols + 2), paper_size[1] // (n_rows + 2))
    if margin_px is None:
        margin_px = square_px
    if square_px <= 0:
        raise ValueError("Square size must be positive")

    height = n_rows * square_px + 2 * margin_px
    width = n_cols * square_px + 2 * margin_px
    img = np.full((height, width), 255, dtype=np.uint8)

    ys, xs = np.mgrid[0 : n_rows * square_px, 0 : n_cols * square_px]
    black = ((ys // square_px + xs // square_px) % 2) == 0
    inner = img[margin_px : margin_px + n_rows * square_px, margin_px : margin_px + n_cols * square_px]
    inner[black] = 0
    return img
