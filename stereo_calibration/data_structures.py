"""
Data structures for chessboard camera calibration.

Provides type-safe containers for the board geometry, collected correspondences,
solver results and the persisted calibration artifact.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any

import cv2
import numpy as np


class CameraIndex(IntEnum):
    """Enum for camera indices in stereo rig."""

    LEFT = 0
    RIGHT = 1


@dataclass(frozen=True)
class BoardSpec:
    """
    Planar chessboard geometry.

    Attributes:
        corners_per_row: Inner corners along one row (board width)
        corners_per_column: Inner corners along one column (board height)
        square_size: Side length of one square in millimeters
    """

    corners_per_row: int
    corners_per_column: int
    square_size: float

    def __post_init__(self):
        if self.corners_per_row < 2 or self.corners_per_column < 2:
            raise ValueError(
                f"Board needs at least 2x2 inner corners, got {self.corners_per_row}x{self.corners_per_column}"
            )
        if self.square_size <= 0:
            raise ValueError(f"Square size must be positive, got {self.square_size}")

    @property
    def pattern_size(self) -> tuple[int, int]:
        """Pattern size in OpenCV order (points per row, points per column)."""
        return (self.corners_per_row, self.corners_per_column)

    @property
    def corner_count(self) -> int:
        return self.corners_per_row * self.corners_per_column


@dataclass(frozen=True)
class ImagePairRef:
    """Position of one image (mono) or image pair (stereo) in the intake list."""

    left_path: str
    right_path: str | None
    index: int

    @property
    def is_pair(self) -> bool:
        return self.right_path is not None

    def paths(self) -> list[str]:
        return [self.left_path] if self.right_path is None else [self.left_path, self.right_path]


@dataclass(frozen=True)
class AcceptedCorrespondence:
    """
    One accepted frame or stereo pair.

    Attributes:
        left_corners: Refined corners of the left (or only) image, Nx1x2 float32
        right_corners: Refined corners of the right image (None for mono)
        world_points: Board corner coordinates in pattern space, Nx3 float32
        source: Image reference that produced the detection
    """

    left_corners: np.ndarray
    right_corners: np.ndarray | None
    world_points: np.ndarray
    source: ImagePairRef


@dataclass(frozen=True)
class CalibrationFlags:
    """
    Named solver options.

    Each option maps onto one OpenCV calibration flag. The bitmask is only
    assembled in ``to_cv_flags`` right before the solver is called.

    Attributes:
        fix_principal_point: Keep the principal point at the image center
        zero_tangential_distortion: Force p1 = p2 = 0
        fix_aspect_ratio: Estimate fy only, keep fx/fy from the initial matrix
        use_intrinsic_guess: Start from the supplied camera matrices
        fix_intrinsics: Stereo only; reuse prior per-camera calibrations and
            estimate R, T, E, F alone
        rational_model: Enable k4, k5, k6 radial terms
        fix_k3, fix_k4, fix_k5: Hold the named radial coefficient at zero
    """

    fix_principal_point: bool = False
    zero_tangential_distortion: bool = True
    fix_aspect_ratio: bool = True
    use_intrinsic_guess: bool = False
    fix_intrinsics: bool = False
    rational_model: bool = False
    fix_k3: bool = False
    fix_k4: bool = True
    fix_k5: bool = True

    _CV_FLAGS = (
        ("use_intrinsic_guess", cv2.CALIB_USE_INTRINSIC_GUESS, "use_intrinsic_guess"),
        ("fix_aspect_ratio", cv2.CALIB_FIX_ASPECT_RATIO, "fix_aspect_ratio"),
        ("fix_principal_point", cv2.CALIB_FIX_PRINCIPAL_POINT, "fix_principal_point"),
        ("zero_tangential_distortion", cv2.CALIB_ZERO_TANGENT_DIST, "zero_tangent_dist"),
        ("rational_model", cv2.CALIB_RATIONAL_MODEL, "rational_model"),
        ("fix_k3", cv2.CALIB_FIX_K3, "fix_k3"),
        ("fix_k4", cv2.CALIB_FIX_K4, "fix_k4"),
        ("fix_k5", cv2.CALIB_FIX_K5, "fix_k5"),
    )

    @classmethod
    def mono_default(cls) -> "CalibrationFlags":
        return cls(fix_principal_point=True, zero_tangential_distortion=True, fix_aspect_ratio=True)

    @classmethod
    def stereo_default(cls) -> "CalibrationFlags":
        return cls(fix_aspect_ratio=True, zero_tangential_distortion=True)

    @classmethod
    def from_dict(cls, values: dict[str, Any] | None, base: "CalibrationFlags | None" = None) -> "CalibrationFlags":
        """Build flags from a config mapping, falling back to ``base`` for missing keys."""
        base = base or cls()
        values = values or {}
        known = {name for name in cls.__dataclass_fields__ if not name.startswith("_")}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown calibration flags: {sorted(unknown)}")
        kwargs = {name: bool(values.get(name, getattr(base, name))) for name in known}
        return cls(**kwargs)

    def to_cv_flags(self, stereo: bool = False) -> int:
        """Translate into the OpenCV bitmask for calibrateCamera / stereoCalibrate."""
        if stereo and self.fix_intrinsics:
            # only R, T, E and F are estimated
            return int(cv2.CALIB_FIX_INTRINSIC)
        value = 0
        for attr, cv_flag, _ in self._CV_FLAGS:
            if getattr(self, attr):
                value |= cv_flag
        return int(value)

    def summary(self, stereo: bool = False) -> str:
        """Human-readable flag list, e.g. '+fix_aspect_ratio+zero_tangent_dist'."""
        if stereo and self.fix_intrinsics:
            return "+fix_intrinsic"
        return "".join(f"+{label}" for attr, _, label in self._CV_FLAGS if getattr(self, attr))


@dataclass(frozen=True)
class CalibrationResult:
    """
    Solved camera parameters.

    For monocular runs the right camera fields mirror the left ones and the
    extrinsic fields (R, T, E, F) are None.

    Attributes:
        camera_matrix_left, dist_left: Left (or only) camera intrinsics
        camera_matrix_right, dist_right: Right camera intrinsics
        R, T: Rotation and translation from left to right camera
        E, F: Essential and fundamental matrices
        overall_residual: Reprojection RMS (mono) or mean epipolar error (stereo)
        per_frame_residual: Residual per accepted frame or pair
        solver_rms: RMS value reported by the OpenCV solver
        flags_value: OpenCV flag bitmask used for the solve
        frame_count: Number of frames/pairs used
        image_size: (width, height)
        rvecs, tvecs: Per-frame board poses (mono only)
    """

    camera_matrix_left: np.ndarray
    dist_left: np.ndarray
    camera_matrix_right: np.ndarray
    dist_right: np.ndarray
    R: np.ndarray | None = None
    T: np.ndarray | None = None
    E: np.ndarray | None = None
    F: np.ndarray | None = None
    overall_residual: float = 0.0
    per_frame_residual: tuple[float, ...] = ()
    solver_rms: float = 0.0
    flags_value: int = 0
    frame_count: int = 0
    image_size: tuple[int, int] = (0, 0)
    rvecs: tuple[np.ndarray, ...] = ()
    tvecs: tuple[np.ndarray, ...] = ()

    @property
    def is_stereo(self) -> bool:
        return self.R is not None and self.T is not None

    @property
    def baseline(self) -> float | None:
        """Distance between camera centers in board units (mm)."""
        if self.T is None:
            return None
        return float(np.linalg.norm(self.T))


@dataclass(frozen=True)
class RectificationResult:
    """
    Stereo rectification transforms.

    Attributes:
        R1, R2: Rectifying rotations for left/right camera (3x3)
        P1, P2: Projection matrices in the rectified frame (3x4)
        Q: Disparity-to-depth mapping matrix (4x4)
        roi_left, roi_right: Valid pixel rectangles (x, y, w, h)
        map_left, map_right: Source->rectified remap tables (map1, map2)
        alpha: Free scaling parameter used for the solve
    """

    R1: np.ndarray
    R2: np.ndarray
    P1: np.ndarray
    P2: np.ndarray
    Q: np.ndarray
    roi_left: tuple[int, int, int, int]
    roi_right: tuple[int, int, int, int]
    map_left: tuple[np.ndarray, np.ndarray] | None = None
    map_right: tuple[np.ndarray, np.ndarray] | None = None
    alpha: float = 1.0

    def has_maps(self) -> bool:
        return self.map_left is not None and self.map_right is not None


@dataclass
class CalibrationArtifact:
    """Everything written to (and read back from) a calibration file."""

    board: BoardSpec
    image_size: tuple[int, int]
    result: CalibrationResult
    rectification: RectificationResult | None = None
    timestamp: str = ""
    flags_value: int = 0
    flags_summary: str = ""

    def has_rectification(self) -> bool:
        return self.rectification is not None

    @property
    def is_stereo(self) -> bool:
        return self.result.is_stereo


@dataclass
class CalibrationRun:
    """
    Mutable state of one collection run.

    Owned by the correspondence collector; detection workers never touch it.

    Attributes:
        board: Board geometry for the run
        accepted: Accepted correspondences in intake order
        good_pairs: Image references that produced accepted correspondences
        image_size: (width, height) fixed by the first loaded image
        processed: Number of frames/pairs examined
        skipped: Number of frames/pairs rejected
        stopped_early: True if the operator ended collection
    """

    board: BoardSpec
    accepted: list[AcceptedCorrespondence] = field(default_factory=list)
    good_pairs: list[ImagePairRef] = field(default_factory=list)
    image_size: tuple[int, int] | None = None
    processed: int = 0
    skipped: int = 0
    stopped_early: bool = False

    def num_accepted(self) -> int:
        return len(self.accepted)

    def object_points(self) -> list[np.ndarray]:
        return [c.world_points for c in self.accepted]

    def image_points(self, idx: CameraIndex = CameraIndex.LEFT) -> list[np.ndarray]:
        if idx == CameraIndex.LEFT:
            return [c.left_corners for c in self.accepted]
        return [c.right_corners for c in self.accepted]


@dataclass
class CalibrationConfig:
    """
    Configuration container loaded from YAML.

    Wraps configuration dictionary with type hints for common access patterns.
    """

    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> "CalibrationConfig":
        """Load configuration from YAML file."""
        import yaml

        with Path(path).open() as f:
            config = yaml.safe_load(f) or {}
        return cls(config=config)

    def get(self, key: str, default: Any = None) -> Any:
        """Get nested config value using dot notation (e.g., 'board.square_size')."""
        keys = key.split(".")
        value = self.config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k, default)
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set nested config value using dot notation, creating sections as needed."""
        keys = key.split(".")
        node = self.config
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value

    @property
    def board(self) -> BoardSpec:
        return BoardSpec(
            corners_per_row=int(self.get("board.width", 6)),
            corners_per_column=int(self.get("board.height", 5)),
            square_size=float(self.get("board.square_size", 30.0)),
        )

    @property
    def stereo_flags(self) -> CalibrationFlags:
        return CalibrationFlags.from_dict(self.get("solver.stereo_flags"), CalibrationFlags.stereo_default())

    @property
    def mono_flags(self) -> CalibrationFlags:
        return CalibrationFlags.from_dict(self.get("solver.mono_flags"), CalibrationFlags.mono_default())

    @property
    def rectify_alpha(self) -> float:
        return float(self.get("rectification.alpha", 1.0))

    @property
    def show_rectified(self) -> bool:
        return bool(self.get("rectification.show", True))

    @property
    def min_frames(self) -> int:
        """Target frame count for mono collection (collection stops once reached)."""
        return int(self.get("collection.min_frames", 15))

    @property
    def max_pairs(self) -> int:
        """Upper bound on stereo pairs passed to the solver (0 = use all)."""
        return int(self.get("collection.max_pairs", 0))

    @property
    def num_workers(self) -> int:
        return int(self.get("collection.num_workers", 1))

    @property
    def review_enabled(self) -> bool:
        return bool(self.get("review.enabled", True))

    def review_delay_ms(self, stereo: bool) -> int:
        key = "review.stereo_delay_ms" if stereo else "review.mono_delay_ms"
        return int(self.get(key, 300 if stereo else 800))

    def output_path(self, stereo: bool) -> Path:
        key = "output.stereo" if stereo else "output.mono"
        return Path(self.get(key, "stereo_params.yaml" if stereo else "calib_result.yaml"))
