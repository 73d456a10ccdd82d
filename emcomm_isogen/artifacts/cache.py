"""Artifact cache.

This module handles:
- Resolving artifact descriptors to verified files in the cache directory
- Integrity checks of cached files against declared or recorded checksums
- Downloading missing artifacts (never in offline mode)

A cached file whose checksum does not match is an error; it is never
silently re-downloaded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from emcomm_isogen.artifacts.fetch import (
    DOWNLOAD_TIMEOUT,
    compute_file_sha256,
    download_with_retries,
    read_sidecar,
    write_sidecar,
)
from emcomm_isogen.errors import FetchError, IntegrityError
from emcomm_isogen.types import FetchState

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


@dataclass(frozen=True)
class ArtifactDescriptor:
    """What to fetch.

    Attributes:
        name: Logical artifact name (e.g. 'base-image', 'installer').
        url: Download URL.
        filename: File name inside the cache directory.
        sha256: Expected checksum, if known up front.
    """

    name: str
    url: str
    filename: str
    sha256: str | None = None


@dataclass(frozen=True)
class Artifact:
    """A fetched artifact. Immutable once verified."""

    name: str
    url: str
    cache_path: Path
    sha256: str
    state: FetchState
    details: dict[str, object] = field(default_factory=dict, compare=False)


class ArtifactCache:
    """Content cache for the base image, installer and add-on archives."""

    def __init__(
        self,
        cache_dir: Path,
        client: httpx.Client | None = None,
        offline: bool = False,
        retries: int = 3,
        backoff: float = 2.0,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self.cache_dir = cache_dir
        self.offline = offline
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self._client = client

    def path_for(self, descriptor: ArtifactDescriptor) -> Path:
        return self.cache_dir / descriptor.filename

    def fetch(self, descriptor: ArtifactDescriptor) -> Artifact:
        """Return a verified artifact, downloading it if absent.

        Args:
            descriptor: Artifact to resolve.

        Returns:
            Artifact pointing at the cached file.

        Raises:
            IntegrityError: If a cached file does not match its checksum.
            FetchError: If the artifact is missing and cannot be downloaded.
        """
        path = self.path_for(descriptor)
        if path.exists():
            return self._verify_cached(descriptor, path)

        if self.offline:
            raise FetchError(
                f"{descriptor.name} not cached at {path} and offline mode is enabled",
                code="offline",
            )
        return self._download(descriptor, path)

    def _verify_cached(self, descriptor: ArtifactDescriptor, path: Path) -> Artifact:
        recorded = read_sidecar(path)
        expected = (descriptor.sha256 or recorded or "").lower() or None
        actual = compute_file_sha256(path)

        if expected is not None and actual != expected:
            raise IntegrityError(
                f"Cached {descriptor.name} at {path} does not match its checksum: "
                f"expected {expected}, got {actual}. Remove the file to re-download.",
                expected=expected,
                actual=actual,
            )

        if recorded is None:
            write_sidecar(path, actual)

        state = FetchState.VERIFIED if expected else FetchState.CACHED
        logger.info("Using cached %s: %s (%s)", descriptor.name, path, state.value)
        return Artifact(
            name=descriptor.name,
            url=descriptor.url,
            cache_path=path,
            sha256=actual,
            state=state,
        )

    def _download(self, descriptor: ArtifactDescriptor, path: Path) -> Artifact:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + PARTIAL_SUFFIX)

        client = self._client or httpx.Client()
        try:
            result = download_with_retries(
                client,
                descriptor.url,
                partial,
                expected_checksum=descriptor.sha256,
                retries=self.retries,
                backoff=self.backoff,
                timeout=self.timeout,
            )
        finally:
            if self._client is None:
                client.close()

        os.replace(partial, path)
        write_sidecar(path, result.checksum)

        state = FetchState.VERIFIED if descriptor.sha256 else FetchState.DOWNLOADED
        return Artifact(
            name=descriptor.name,
            url=descriptor.url,
            cache_path=path,
            sha256=result.checksum,
            state=state,
            details={"attempts": result.attempts, "size_bytes": result.size_bytes},
        )


__all__ = ["Artifact", "ArtifactCache", "ArtifactDescriptor"]
