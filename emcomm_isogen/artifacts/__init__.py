"""Artifact management module.

This module handles:
- Content-addressed caching of the base image and installer archives
- Download with retries and checksum verification
- Installer release discovery on GitHub
"""

from emcomm_isogen.artifacts.cache import Artifact, ArtifactCache, ArtifactDescriptor
from emcomm_isogen.artifacts.releases import (
    ReleaseInfo,
    ReleaseResolver,
    installer_descriptor,
    parse_release_tag,
)

__all__ = [
    "Artifact",
    "ArtifactCache",
    "ArtifactDescriptor",
    "ReleaseInfo",
    "ReleaseResolver",
    "installer_descriptor",
    "parse_release_tag",
]
