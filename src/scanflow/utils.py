# src/scanflow/utils.py
from __future__ import annotations

import base64
import logging
import uuid
from pathlib import Path
from typing import Union

from slugify import slugify

logger = logging.getLogger("scanflow")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp", ".tiff", ".tif", ".webp")


def safe_fname(name: str, fallback: str = "file") -> str:
    """
    Create a filesystem safe name, preserve extension when present.
    """
    name = (name or "").strip() or fallback
    if "." in name:
        base, ext = name.rsplit(".", 1)
        return f"{slugify(base)[:100] or fallback}.{ext}"
    return slugify(name)[:100] or fallback


def derivative_path(output_dir: Path, source: Union[str, Path], tag: str, ext: str = "jpg") -> Path:
    """
    Unique path for a derivative of source, e.g. <dir>/receipt-scan_thumb-80_1a2b3c4d.jpg
    """
    stem = safe_fname(Path(source).stem, fallback="image")
    return Path(output_dir) / f"{stem}_{tag}_{uuid.uuid4().hex[:8]}.{ext}"


def file_size_bytes(path: Union[str, Path]) -> int:
    """Size on disk, 0 when the file cannot be stat'ed."""
    try:
        return Path(path).stat().st_size
    except OSError as e:
        logger.warning("Error getting file size for %s, %s", path, e)
        return 0


def is_image_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES


def image_to_base64(image_path: Union[str, Path]) -> str:
    """Raw base64 payload of an image file (no data URL prefix)."""
    data = Path(image_path).read_bytes()
    return base64.b64encode(data).decode("ascii")

