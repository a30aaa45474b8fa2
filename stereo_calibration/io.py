"""
I/O utilities for saving and loading calibration results.

Calibration files are YAML with named fields so values can be inspected by
hand. The rectification block is appended to an existing file without
rewriting the calibration block above it.
"""

import logging
import time
from pathlib import Path

import cv2
import numpy as np
import yaml

from .data_structures import BoardSpec, CalibrationArtifact, CalibrationResult, RectificationResult
from .errors import ArtifactError

logger = logging.getLogger(__name__)

TIME_FORMAT = "%c"


def _numpy_to_python(obj):
    """Convert numpy types to Python native types for YAML serialization."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numpy_to_python(item) for item in obj]
    return obj


def _as_array(value, name: str) -> np.ndarray:
    if value is None:
        raise ArtifactError(f"Calibration file is missing '{name}'")
    return np.array(value, dtype=np.float64)


def _first_node_mat(fs: cv2.FileStorage, names: tuple[str, ...]) -> np.ndarray | None:
    for name in names:
        node = fs.getNode(name)
        if not node.empty():
            return node.mat()
    return None


def _rectification_block(rect: RectificationResult) -> dict:
    return {
        "R1": _numpy_to_python(rect.R1),
        "R2": _numpy_to_python(rect.R2),
        "P1": _numpy_to_python(rect.P1),
        "P2": _numpy_to_python(rect.P2),
        "Q": _numpy_to_python(rect.Q),
        "roi_left": list(rect.roi_left),
        "roi_right": list(rect.roi_right),
        "alpha": float(rect.alpha),
    }


def artifact_to_dict(artifact: CalibrationArtifact) -> dict:
    """Build the named-field mapping written to disk (rectification excluded)."""
    result = artifact.result
    board = artifact.board
    width, height = artifact.image_size

    data = {
        "calibration_time": artifact.timestamp or time.strftime(TIME_FORMAT),
        "frame_count": int(result.frame_count),
        "image_width": int(width),
        "image_height": int(height),
        "board_width": board.corners_per_row,
        "board_height": board.corners_per_column,
        "square_size": float(board.square_size),
        "flag_value": int(artifact.flags_value),
        "flag_summary": artifact.flags_summary,
    }

    if result.is_stereo:
        data["left"] = {
            "camera_matrix": _numpy_to_python(result.camera_matrix_left),
            "dist_coeffs": _numpy_to_python(result.dist_left),
        }
        data["right"] = {
            "camera_matrix": _numpy_to_python(result.camera_matrix_right),
            "dist_coeffs": _numpy_to_python(result.dist_right),
        }
        data["extrinsics"] = {
            "R": _numpy_to_python(result.R),
            "T": _numpy_to_python(result.T),
            "E": _numpy_to_python(result.E),
            "F": _numpy_to_python(result.F),
        }
        data["error_type"] = "epipolar"
    else:
        data["camera"] = {
            "camera_matrix": _numpy_to_python(result.camera_matrix_left),
            "dist_coeffs": _numpy_to_python(result.dist_left),
        }
        data["error_type"] = "reprojection"

    data["avg_error"] = float(result.overall_residual)
    data["solver_rms"] = float(result.solver_rms)
    data["per_frame_error"] = [float(e) for e in result.per_frame_residual]
    return data


def save_calibration(artifact: CalibrationArtifact, output_path: Path | str) -> None:
    """
    Write a calibration file.

    The rectification block, if present on the artifact, is appended after the
    calibration block.

    Args:
        artifact: Calibration to persist
        output_path: Destination YAML path

    Raises:
        OSError: If the file cannot be written
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    data = artifact_to_dict(artifact)
    with output_path.open("w") as f:
        if artifact.flags_summary:
            f.write(f"# flags: {artifact.flags_summary}\n")
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    if artifact.rectification is not None:
        append_rectification(output_path, artifact.rectification)

    logger.info("Calibration saved to %s", output_path)


def append_rectification(output_path: Path | str, rect: RectificationResult) -> None:
    """
    Append the rectification block to an existing calibration file.

    Raises:
        FileNotFoundError: If the calibration file does not exist
        ArtifactError: If the file already holds a rectification block
    """
    output_path = Path(output_path)
    if not output_path.exists():
        raise FileNotFoundError(f"Calibration file not found: {output_path}")

    with output_path.open() as f:
        existing = yaml.safe_load(f) or {}
    if "rectification" in existing:
        raise ArtifactError(f"{output_path} already contains rectification parameters")

    with output_path.open("a") as f:
        f.write("# Rectification params\n")
        yaml.dump({"rectification": _rectification_block(rect)}, f, default_flow_style=False, sort_keys=False)

    logger.info("Rectification result appended to %s", output_path)


def load_calibration(input_path: Path | str, build_maps: bool = False) -> CalibrationArtifact:
    """
    Load a calibration file.

    Files without a rectification block load fine; ``has_rectification()`` is
    then False.

    Args:
        input_path: Path to calibration file
        build_maps: Rebuild remap tables for a stored rectification

    Returns:
        CalibrationArtifact

    Raises:
        FileNotFoundError: If the file does not exist
        ArtifactError: If required fields are missing
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise FileNotFoundError(f"Calibration file not found: {input_path}")

    with input_path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ArtifactError(f"Cannot parse calibration file {input_path}: {e}") from e
    if not isinstance(data, dict):
        raise ArtifactError(f"Calibration file {input_path} is not a mapping")

    try:
        board = BoardSpec(
            corners_per_row=int(data["board_width"]),
            corners_per_column=int(data["board_height"]),
            square_size=float(data["square_size"]),
        )
        image_size = (int(data["image_width"]), int(data["image_height"]))
    except KeyError as e:
        raise ArtifactError(f"Calibration file {input_path} is missing {e}") from e

    common = {
        "overall_residual": float(data.get("avg_error", 0.0)),
        "per_frame_residual": tuple(float(e) for e in data.get("per_frame_error") or []),
        "solver_rms": float(data.get("solver_rms", 0.0)),
        "flags_value": int(data.get("flag_value", 0)),
        "frame_count": int(data.get("frame_count", 0)),
        "image_size": image_size,
    }

    if "left" in data and "right" in data:
        left, right = data["left"], data["right"]
        extr = data.get("extrinsics") or {}
        result = CalibrationResult(
            camera_matrix_left=_as_array(left.get("camera_matrix"), "left.camera_matrix"),
            dist_left=_as_array(left.get("dist_coeffs"), "left.dist_coeffs"),
            camera_matrix_right=_as_array(right.get("camera_matrix"), "right.camera_matrix"),
            dist_right=_as_array(right.get("dist_coeffs"), "right.dist_coeffs"),
            R=_as_array(extr.get("R"), "extrinsics.R"),
            T=_as_array(extr.get("T"), "extrinsics.T"),
            E=_as_array(extr.get("E"), "extrinsics.E"),
            F=_as_array(extr.get("F"), "extrinsics.F"),
            **common,
        )
    elif "camera" in data:
        K = _as_array(data["camera"].get("camera_matrix"), "camera.camera_matrix")
        dist = _as_array(data["camera"].get("dist_coeffs"), "camera.dist_coeffs")
        result = CalibrationResult(
            camera_matrix_left=K, dist_left=dist, camera_matrix_right=K, dist_right=dist, **common
        )
    else:
        raise ArtifactError(f"Calibration file {input_path} has no camera parameters")

    rect = None
    if data.get("rectification"):
        r = data["rectification"]
        rect = RectificationResult(
            R1=_as_array(r.get("R1"), "rectification.R1"),
            R2=_as_array(r.get("R2"), "rectification.R2"),
            P1=_as_array(r.get("P1"), "rectification.P1"),
            P2=_as_array(r.get("P2"), "rectification.P2"),
            Q=_as_array(r.get("Q"), "rectification.Q"),
            roi_left=tuple(int(v) for v in r.get("roi_left") or (0, 0, 0, 0)),
            roi_right=tuple(int(v) for v in r.get("roi_right") or (0, 0, 0, 0)),
            alpha=float(r.get("alpha", 1.0)),
        )
        if build_maps:
            from .rectification import attach_maps

            rect = attach_maps(rect, result, image_size)

    logger.info("Calibration loaded from %s", input_path)
    return CalibrationArtifact(
        board=board,
        image_size=image_size,
        result=result,
        rectification=rect,
        timestamp=str(data.get("calibration_time", "")),
        flags_value=int(data.get("flag_value", 0)),
        flags_summary=str(data.get("flag_summary") or ""),
    )


def load_intrinsics(input_path: Path | str) -> tuple[np.ndarray, np.ndarray]:
    """
    Read (camera matrix, distortion coefficients) from a single-camera calibration.

    Accepts this package's YAML files and OpenCV FileStorage XML files with
    ``camera_Matrix``/``cameraMatrix`` and ``Distortion_Coefficients``/``distCoeffs`` nodes.
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise FileNotFoundError(f"Calibration file not found: {input_path}")

    if input_path.suffix.lower() == ".xml":
        fs = cv2.FileStorage(str(input_path), cv2.FILE_STORAGE_READ)
        if not fs.isOpened():
            raise ArtifactError(f"Cannot open calibration file {input_path}")
        try:
            K = _first_node_mat(fs, ("camera_Matrix", "cameraMatrix"))
            dist = _first_node_mat(fs, ("Distortion_Coefficients", "distCoeffs"))
        finally:
            fs.release()
        return _as_array(K, "cameraMatrix"), _as_array(dist, "distCoeffs")

    artifact = load_calibration(input_path)
    if artifact.is_stereo:
        raise ArtifactError(f"{input_path} is a stereo calibration; expected a single-camera file")
    return artifact.result.camera_matrix_left, artifact.result.dist_left
