"""Installer release discovery.

This module handles:
- Resolving the EmComm Tools installer release (stable, latest tag, exact tag)
- Listing published releases and development tags
- Parsing version components out of release tags
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from emcomm_isogen.artifacts.cache import ArtifactDescriptor
from emcomm_isogen.errors import FetchError
from emcomm_isogen.types import ReleaseMode

logger = logging.getLogger(__name__)

API_TIMEOUT = 30

VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+$")
DATE_PATTERN = re.compile(r"\d{8}")
RELEASE_NUMBER_PATTERN = re.compile(r"r\d+")
BUILD_NUMBER_PATTERN = re.compile(r"build\d+")


@dataclass
class ReleaseInfo:
    """A resolved installer release.

    Attributes:
        tag: Git tag name.
        name: Release title (the tag for plain tags).
        tarball_url: Source tarball URL.
        version: Semantic version suffix, or 'dev'.
        date_version: First 8-digit date in the tag, or 'unknown'.
        release_number: 'rN' component, or 'r0'.
        build_number: 'buildN' component, or ''.
        published_at: Publication date for formal releases.
    """

    tag: str
    name: str
    tarball_url: str
    version: str = "dev"
    date_version: str = "unknown"
    release_number: str = "r0"
    build_number: str = ""
    published_at: str | None = None

    @property
    def tarball_filename(self) -> str:
        return f"{self.tag}.tar.gz"

    @property
    def volume_label(self) -> str:
        """ISO volume label for images built from this release."""
        return f"ETC_{self.release_number.upper()}_CUSTOM"

    @property
    def output_filename(self) -> str:
        return f"{self.tag}-custom.iso"


def parse_release_tag(tag: str) -> dict[str, str]:
    """Extract version components from a release tag.

    Args:
        tag: Tag like 'emcomm-tools-os-community-20250401-r5-final-5.0.0'.

    Returns:
        Dict with version, date_version, release_number and build_number.
    """
    version = VERSION_PATTERN.search(tag)
    date = DATE_PATTERN.search(tag)
    release = RELEASE_NUMBER_PATTERN.search(tag)
    build = BUILD_NUMBER_PATTERN.search(tag)
    return {
        "version": version.group(0) if version else "dev",
        "date_version": date.group(0) if date else "unknown",
        "release_number": release.group(0) if release else "r0",
        "build_number": build.group(0) if build else "",
    }


def _release_info(
    tag: str, name: str, tarball_url: str, published_at: str | None = None
) -> ReleaseInfo:
    return ReleaseInfo(
        tag=tag,
        name=name or tag,
        tarball_url=tarball_url,
        published_at=published_at,
        **parse_release_tag(tag),
    )


def _get_json(client: httpx.Client, url: str, params: dict[str, Any] | None = None) -> Any:
    try:
        response = client.get(
            url,
            params=params,
            timeout=API_TIMEOUT,
            headers={"Accept": "application/vnd.github+json"},
        )
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"GitHub API error for {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to query {url}: {e}", code="transport_error") from e


class ReleaseResolver:
    """Queries the GitHub API for installer releases."""

    def __init__(
        self,
        repo: str,
        api_base: str = "https://api.github.com",
        client: httpx.Client | None = None,
    ) -> None:
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.client = client or httpx.Client()

    @property
    def releases_url(self) -> str:
        return f"{self.api_base}/repos/{self.repo}/releases"

    @property
    def tags_url(self) -> str:
        return f"{self.api_base}/repos/{self.repo}/tags"

    def resolve(self, mode: ReleaseMode, tag: str | None = None) -> ReleaseInfo:
        """Resolve a release.

        Args:
            mode: stable (latest formal release), latest (most recent tag)
                or tag (exact tag lookup).
            tag: Tag name, required for ReleaseMode.TAG.

        Returns:
            ReleaseInfo for the selected release.

        Raises:
            FetchError: If the API cannot be queried or nothing matches.
            ValueError: If mode is TAG and no tag is given.
        """
        logger.info("Fetching release information (mode: %s)", mode.value)

        if mode == ReleaseMode.STABLE:
            data = _get_json(self.client, f"{self.releases_url}/latest")
            info = _release_info(
                data.get("tag_name") or "",
                data.get("name") or "",
                data.get("tarball_url") or "",
                published_at=data.get("published_at"),
            )
        elif mode == ReleaseMode.LATEST:
            tags = _get_json(self.client, self.tags_url, {"per_page": 1})
            if not tags:
                raise FetchError("No tags published", code="release_not_found")
            info = _release_info(tags[0]["name"], "", tags[0].get("tarball_url") or "")
        else:
            if not tag:
                raise ValueError("a tag is required for release mode 'tag'")
            tags = _get_json(self.client, self.tags_url, {"per_page": 100})
            match = next((t for t in tags if t.get("name") == tag), None)
            if match is None:
                raise FetchError(f"Tag not found: {tag}", code="release_not_found")
            info = _release_info(match["name"], "", match.get("tarball_url") or "")

        if not info.tag or not info.tarball_url:
            raise FetchError(
                "Failed to determine release information", code="release_not_found"
            )

        logger.info("Release: %s (tag %s, version %s)", info.name, info.tag, info.version)
        return info

    def list_releases(self, limit: int = 5) -> list[ReleaseInfo]:
        """List the most recent formal releases."""
        data = _get_json(self.client, self.releases_url, {"per_page": limit})
        return [
            _release_info(
                r.get("tag_name") or "",
                r.get("name") or "",
                r.get("tarball_url") or "",
                published_at=r.get("published_at"),
            )
            for r in data
        ]

    def list_tags(self, limit: int = 10) -> list[ReleaseInfo]:
        """List the most recent development tags."""
        data = _get_json(self.client, self.tags_url, {"per_page": limit})
        return [
            _release_info(t["name"], "", t.get("tarball_url") or "") for t in data
        ]


def installer_descriptor(release: ReleaseInfo) -> ArtifactDescriptor:
    """Return the cache descriptor for a release's installer tarball."""
    return ArtifactDescriptor(
        name="installer",
        url=release.tarball_url,
        filename=release.tarball_filename,
    )


__all__ = [
    "ReleaseInfo",
    "ReleaseResolver",
    "installer_descriptor",
    "parse_release_tag",
]
