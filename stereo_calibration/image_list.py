"""
Image-list input.

Calibration images are supplied either by a list file (YAML/JSON sequence,
OpenCV FileStorage XML/YAML, or plain text with one path per line) or built
from a filename prefix plus a two-digit numeric suffix.
"""

import json
import logging
from collections.abc import Callable
from pathlib import Path

import cv2
import yaml

from .data_structures import ImagePairRef
from .errors import ImageListError

logger = logging.getLogger(__name__)


def _first_sequence(data) -> list | None:
    """Return the first top-level sequence in a parsed YAML/JSON document."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                return value
    return None


def _read_filestorage_list(path: Path) -> list[str]:
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise ImageListError(f"Failed to open image list {path}")
    try:
        node = fs.getFirstTopLevelNode()
        if node.empty() or not node.isSeq():
            raise ImageListError(f"Image list {path} does not contain a sequence")
        return [node.at(i).string() for i in range(node.size())]
    finally:
        fs.release()


def read_image_list(path: str | Path, relative_to_list: bool = True) -> list[str]:
    """
    Read an ordered list of image paths from a list file.

    Args:
        path: List file (.yaml/.yml/.json/.xml/.txt)
        relative_to_list: Resolve relative entries against the list file's directory

    Returns:
        Image paths in file order

    Raises:
        ImageListError: If the file cannot be read or holds no sequence of paths
    """
    path = Path(path)
    if not path.exists():
        raise ImageListError(f"Image list not found: {path}")

    ext = path.suffix.lower()
    with path.open() as f:
        head = f.readline()

    if ext == ".xml" or head.startswith("%YAML"):
        entries = _read_filestorage_list(path)
    elif ext in (".yaml", ".yml", ".json"):
        with path.open() as f:
            try:
                data = json.load(f) if ext == ".json" else yaml.safe_load(f)
            except (json.JSONDecodeError, yaml.YAMLError) as e:
                raise ImageListError(f"Cannot parse image list {path}: {e}") from e
        entries = _first_sequence(data)
        if entries is None:
            raise ImageListError(f"Image list {path} does not contain a sequence")
    else:
        with path.open() as f:
            entries = [line.strip() for line in f if line.strip() and not line.lstrip().startswith("#")]

    images = []
    for entry in entries:
        p = Path(str(entry))
        if relative_to_list and not p.is_absolute():
            p = path.parent / p
        images.append(str(p))

    logger.info("Read %d image paths from %s", len(images), path)
    return images


def build_image_list(prefix: str, count: int, ext: str = ".jpg", start: int = 1) -> list[str]:
    """Build ``prefix01.jpg, prefix02.jpg, ...`` for ``count`` images."""
    if count <= 0:
        raise ImageListError("Number of images must be positive")
    return [f"{prefix}{i:02d}{ext}" for i in range(start, start + count)]


def build_stereo_image_list(
    left_prefix: str, right_prefix: str, count: int, ext: str = ".jpg", start: int = 1
) -> list[str]:
    """Interleave left/right prefixed names: left01, right01, left02, right02, ..."""
    left = build_image_list(left_prefix, count, ext, start)
    right = build_image_list(right_prefix, count, ext, start)
    return [name for pair in zip(left, right, strict=True) for name in pair]


def prompt_image_list(stereo: bool = False, input_fn: Callable[[str], str] = input) -> list[str]:
    """
    Ask the operator for an image prefix (or left/right prefixes) and a count.

    Args:
        stereo: Ask for left and right prefixes
        input_fn: Line reader, ``input`` by default

    Returns:
        Built image list
    """
    if stereo:
        left_prefix = input_fn("Input the relative path and prefix of left images, e.g. 'images/left': ").strip()
        right_prefix = input_fn("Input the relative path and prefix of right images, e.g. 'images/right': ").strip()
    else:
        left_prefix = input_fn("Input the relative path and prefix of images, e.g. 'images/left': ").strip()
        right_prefix = None
    raw_count = input_fn("Input the number of images: ").strip()
    try:
        count = int(raw_count)
    except ValueError as e:
        raise ImageListError(f"Invalid number of images: {raw_count!r}") from e

    if right_prefix is not None:
        return build_stereo_image_list(left_prefix, right_prefix, count)
    return build_image_list(left_prefix, count)


def make_image_pairs(images: list[str], stereo: bool) -> list[ImagePairRef]:
    """
    Group an image list into references.

    Stereo lists are strictly alternating left/right entries.

    Raises:
        ImageListError: If the list is empty or has odd length in stereo mode
    """
    if not images:
        raise ImageListError("The image list is empty")
    if not stereo:
        return [ImagePairRef(left_path=p, right_path=None, index=i) for i, p in enumerate(images)]
    if len(images) % 2 != 0:
        raise ImageListError(f"The image list contains an odd number of elements ({len(images)})")
    return [
        ImagePairRef(left_path=images[2 * i], right_path=images[2 * i + 1], index=i) for i in range(len(images) // 2)
    ]
