"""Upstream installer execution.

This module handles:
- Unpacking the EmComm Tools installer tarball into the chroot
- Pointing apt at the archive mirror for end-of-life releases
- Running the installer inside the chroot with its output in the build log
- Verifying the installation marker and removing the installer files

A nonzero installer exit is fatal and never retried.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from emcomm_isogen.errors import CommandError, InstallerFailure
from emcomm_isogen.image.mount import ImageContext, run_in_chroot

logger = logging.getLogger(__name__)

INSTALL_DIR = PurePosixPath("tmp/etc-installer")
INSTALL_SCRIPT = PurePosixPath("scripts/install.sh")

INSTALLER_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "NEEDRESTART_MODE": "a",
}

# Hosts rewritten to the archive mirror once a release reaches end of life
EOL_APT_HOSTS = ("archive.ubuntu.com", "security.ubuntu.com")
ARCHIVE_MIRROR = "old-releases.ubuntu.com"

EXPECTED_TOOLS = ("direwolf", "pat")


@dataclass
class ExitStatus:
    """Outcome of a successful installer run.

    Attributes:
        exit_code: Installer exit code (always 0 when returned).
        duration: Wall-clock seconds.
        marker: Verified marker directory inside the image.
        warnings: Non-fatal findings (missing optional tools).
    """

    exit_code: int
    duration: float
    marker: Path
    warnings: list[str] = field(default_factory=list)


def _strip_first_component(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    for member in tar.getmembers():
        parts = PurePosixPath(member.name).parts
        if PurePosixPath(member.name).is_absolute() or ".." in parts:
            raise InstallerFailure(
                f"Refusing to extract {member.name}: path traversal detected",
                code="path_traversal",
            )
        if len(parts) < 2:
            continue
        member.name = str(PurePosixPath(*parts[1:]))
        if member.islnk():
            link_parts = PurePosixPath(member.linkname).parts
            member.linkname = str(PurePosixPath(*link_parts[1:]))
        yield member


def unpack_installer(archive: Path, dest_dir: Path) -> Path:
    """Unpack a release tarball, dropping its top-level directory.

    Args:
        archive: Installer tarball (.tar.gz).
        dest_dir: Destination directory.

    Returns:
        Path of the install script.

    Raises:
        InstallerFailure: If the archive is unreadable or has no install script.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(dest_dir, members=_strip_first_component(tar), filter="data")
    except (tarfile.TarError, OSError) as e:
        raise InstallerFailure(
            f"Failed to unpack installer {archive}: {e}", code="unpack_failed"
        ) from e

    script = dest_dir / INSTALL_SCRIPT
    if not script.is_file():
        found = sorted(dest_dir.rglob("install.sh"))
        hint = f" (found {found[0]})" if found else ""
        raise InstallerFailure(
            f"Installer archive has no {INSTALL_SCRIPT}{hint}",
            code="script_missing",
        )
    script.chmod(script.stat().st_mode | 0o111)
    return script


def use_archive_mirror(root: Path) -> bool:
    """Point apt sources of an end-of-life release at the archive mirror.

    Returns:
        True if sources.list was changed.
    """
    sources = root / "etc" / "apt" / "sources.list"
    if not sources.is_file():
        return False
    content = sources.read_text(encoding="utf-8")
    updated = content
    for host in EOL_APT_HOSTS:
        updated = updated.replace(host, ARCHIVE_MIRROR)
    if updated == content:
        return False
    sources.write_text(updated, encoding="utf-8")
    logger.info("apt sources now use %s", ARCHIVE_MIRROR)
    return True


def check_tools(ctx: ImageContext, tools: Sequence[str] = EXPECTED_TOOLS) -> list[str]:
    """Check that expected tools are on PATH inside the chroot."""
    warnings: list[str] = []
    for tool in tools:
        result = run_in_chroot(
            ctx, ["/bin/bash", "-c", f"command -v {tool}"], check=False
        )
        if result.returncode != 0:
            message = f"Expected tool not found in image: {tool}"
            logger.warning(message)
            warnings.append(message)
    return warnings


def run(
    ctx: ImageContext,
    installer_archive: Path,
    marker: str = "opt/emcomm-tools",
    env: Mapping[str, str] | None = None,
) -> ExitStatus:
    """Run the upstream installer inside the bound chroot.

    Args:
        ctx: Image context in the chroot-bound state.
        installer_archive: Installer tarball from the artifact cache.
        marker: Directory (relative to the image root) the installer creates.
        env: Extra variables for the installer (e.g. ET_EXPERT).

    Returns:
        ExitStatus of the successful run.

    Raises:
        InstallerFailure: On nonzero exit or a missing marker.
    """
    install_dir = ctx.squashfs_root / INSTALL_DIR
    if install_dir.exists():
        shutil.rmtree(install_dir)

    logger.info("Installing EmComm Tools Community (30-60 minutes)")
    try:
        unpack_installer(installer_archive, install_dir)
        use_archive_mirror(ctx.squashfs_root)

        run_env = {**INSTALLER_ENV, **(env or {})}
        script_dir = PurePosixPath("/") / INSTALL_DIR / INSTALL_SCRIPT.parent
        try:
            result = run_in_chroot(
                ctx,
                ["/bin/bash", "-c", f"cd {script_dir} && ./{INSTALL_SCRIPT.name}"],
                env=run_env,
                check=False,
            )
        except CommandError as e:
            raise InstallerFailure(
                f"Failed to start installer: {e}", code="installer_not_started"
            ) from e
    finally:
        if install_dir.exists():
            shutil.rmtree(install_dir)
            logger.debug("Removed installer files from %s", install_dir)

    if result.returncode != 0:
        raise InstallerFailure(
            f"Installer failed with exit code {result.returncode}",
            exit_code=result.returncode,
        )

    marker_path = ctx.squashfs_root / marker
    if not marker_path.is_dir():
        raise InstallerFailure(
            f"Installer finished but marker /{marker} is missing",
            exit_code=result.returncode,
            code="marker_missing",
        )

    warnings = check_tools(ctx)
    logger.info("Installer finished in %.0f seconds", result.duration)
    return ExitStatus(
        exit_code=result.returncode,
        duration=result.duration,
        marker=marker_path,
        warnings=warnings,
    )


__all__ = ["ExitStatus", "check_tools", "run", "unpack_installer", "use_archive_mirror"]
