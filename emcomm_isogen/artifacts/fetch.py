"""Artifact download module.

This module handles:
- Streaming downloads with on-the-fly SHA256 computation
- Bounded retries with exponential backoff
- Checksum helpers and sidecar files
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from emcomm_isogen.errors import FetchError, IntegrityError

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB

SIDECAR_SUFFIX = ".sha256"


@dataclass
class DownloadResult:
    """Result of a single download."""

    path: Path
    checksum: str
    size_bytes: int
    attempts: int = 1


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def sidecar_path(file_path: Path) -> Path:
    """Return the checksum sidecar path for a cached file."""
    return file_path.with_name(file_path.name + SIDECAR_SUFFIX)


def read_sidecar(file_path: Path) -> str | None:
    """Read the recorded checksum of a cached file.

    Args:
        file_path: Cached file (not the sidecar itself).

    Returns:
        Lowercase hex digest, or None if no sidecar exists.
    """
    sidecar = sidecar_path(file_path)
    if not sidecar.exists():
        return None
    content = sidecar.read_text(encoding="utf-8").split()
    return content[0].lower() if content else None


def write_sidecar(file_path: Path, checksum: str) -> Path:
    """Record a checksum next to a cached file in sha256sum format."""
    sidecar = sidecar_path(file_path)
    sidecar.write_text(f"{checksum}  {file_path.name}\n", encoding="utf-8")
    return sidecar


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        FetchError: If the transfer fails.
        IntegrityError: If checksum verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.HTTPError as e:
        dest_path.unlink(missing_ok=True)
        raise FetchError(f"Error downloading {url}: {e}", code="transport_error") from e

    computed_checksum = sha256.hexdigest()
    if expected_checksum and computed_checksum != expected_checksum.lower():
        dest_path.unlink(missing_ok=True)
        raise IntegrityError(
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}",
            expected=expected_checksum.lower(),
            actual=computed_checksum,
        )

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )
    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def download_with_retries(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    retries: int = 3,
    backoff: float = 2.0,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> DownloadResult:
    """Download a file, retrying transfer failures with exponential backoff.

    Checksum mismatches are not retried: the server delivered the whole
    file and it is wrong.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path.
        expected_checksum: Expected SHA256 checksum (optional).
        retries: Maximum number of attempts (>= 1).
        backoff: Base delay; attempt n waits ``backoff * 2**(n-1)`` seconds.
        timeout: Per-attempt timeout in seconds.

    Returns:
        DownloadResult of the successful attempt.

    Raises:
        FetchError: After the last failed attempt, with ``retries`` set.
        IntegrityError: If the downloaded content fails verification.
    """
    attempts = max(1, retries)
    last_error: FetchError | None = None

    for attempt in range(1, attempts + 1):
        try:
            result = download_file(
                client,
                url,
                dest_path,
                expected_checksum=expected_checksum,
                timeout=timeout,
            )
            result.attempts = attempt
            return result
        except FetchError as e:
            last_error = e
            logger.warning(
                "Download attempt %d/%d for %s failed: %s", attempt, attempts, url, e
            )
            if attempt < attempts:
                delay = backoff * 2 ** (attempt - 1)
                if delay > 0:
                    logger.debug("Retrying in %.1f seconds", delay)
                    time.sleep(delay)

    raise FetchError(
        f"Failed to download {url} after {attempts} attempt(s): {last_error}",
        retries=attempts,
        code=last_error.code if last_error else "fetch_error",
    )


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DownloadResult",
    "compute_file_sha256",
    "download_file",
    "download_with_retries",
    "read_sidecar",
    "sidecar_path",
    "write_sidecar",
]
