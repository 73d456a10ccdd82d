"""File helpers for customization units."""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def image_path(root: Path, rel: str) -> Path:
    """Resolve a path relative to the image root, refusing escapes.

    Raises:
        ValueError: If rel is absolute or climbs out of root.
    """
    if rel.startswith("/") or ".." in Path(rel).parts:
        raise ValueError(f"Path must stay inside the image root: {rel}")
    return root / rel


def write_file(root: Path, rel: str, content: str, mode: int = 0o644) -> Path:
    """Write a text file into the image, replacing symlinks and setting mode."""
    path = image_path(root, rel)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.is_symlink():
        path.unlink()
    path.write_text(content, encoding="utf-8")
    os.chmod(path, mode)
    logger.debug("Wrote /%s", rel)
    return path


def remove_file(root: Path, rel: str) -> bool:
    path = image_path(root, rel)
    if path.is_symlink() or path.exists():
        path.unlink()
        logger.debug("Removed /%s", rel)
        return True
    return False


__all__ = ["image_path", "remove_file", "write_file"]
