"""Artifact descriptors for the build inputs.

This module handles:
- Descriptors for the base Ubuntu ISO and the optional add-ons archive
- Unpacking the add-ons archive into the cache
"""

from __future__ import annotations

import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath

from emcomm_isogen.artifacts.cache import Artifact, ArtifactDescriptor
from emcomm_isogen.config import Settings
from emcomm_isogen.errors import FetchError

logger = logging.getLogger(__name__)

ADDONS_OVERLAY_DIR = "overlay"


def base_image_descriptor(settings: Settings) -> ArtifactDescriptor:
    """Return the descriptor of the stock Ubuntu ISO."""
    filename = PurePosixPath(settings.base_image_url).name or "base.iso"
    return ArtifactDescriptor(
        name="base-image",
        url=settings.base_image_url,
        filename=filename,
        sha256=settings.base_image_sha256,
    )


def addons_descriptor(settings: Settings) -> ArtifactDescriptor:
    """Return the descriptor of the et-os-addons archive."""
    return ArtifactDescriptor(
        name="addons",
        url=settings.addons_url,
        filename="et-os-addons-main.zip",
    )


def unpack_addons(artifact: Artifact, dest_dir: Path) -> Path:
    """Unpack the add-ons archive and return its overlay directory.

    An existing unpacked tree is reused.

    Args:
        artifact: Fetched add-ons zip archive.
        dest_dir: Directory to unpack into.

    Returns:
        Path of the overlay directory inside the unpacked tree.

    Raises:
        FetchError: If the archive is unsafe or has no overlay directory.
    """
    marker = dest_dir / ".unpacked"
    if not marker.exists():
        if dest_dir.exists():
            shutil.rmtree(dest_dir)
        dest_dir.mkdir(parents=True)
        try:
            with zipfile.ZipFile(artifact.cache_path) as archive:
                for name in archive.namelist():
                    member = PurePosixPath(name)
                    if member.is_absolute() or ".." in member.parts:
                        raise FetchError(
                            f"Refusing to extract {name}: path traversal detected",
                            code="path_traversal",
                        )
                archive.extractall(dest_dir)
        except zipfile.BadZipFile as e:
            raise FetchError(
                f"Add-ons archive is corrupt: {artifact.cache_path}",
                code="bad_archive",
            ) from e
        marker.touch()

    candidates = sorted(dest_dir.glob(f"*/{ADDONS_OVERLAY_DIR}")) + [
        dest_dir / ADDONS_OVERLAY_DIR
    ]
    for candidate in candidates:
        if candidate.is_dir():
            logger.info("Add-ons overlay: %s", candidate)
            return candidate
    raise FetchError(
        f"Add-ons archive has no '{ADDONS_OVERLAY_DIR}' directory", code="bad_archive"
    )


__all__ = ["addons_descriptor", "base_image_descriptor", "unpack_addons"]
