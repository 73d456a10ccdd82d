"""Image repacking.

This module handles:
- Rebuilding filesystem.squashfs from the customized root
- Writing filesystem.size and the version descriptor
- Regenerating md5sum.txt over the final ISO tree
- Producing the bootable ISO with xorriso (UEFI, falling back to plain)

Repacking runs only on an unmounted image and has no timeout.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

from emcomm_isogen.errors import CommandError, RepackError
from emcomm_isogen.image import command
from emcomm_isogen.image.mount import ImageContext
from emcomm_isogen.types import MountState

logger = logging.getLogger(__name__)

EFI_IMAGE = "boot/grub/efi.img"
MD5SUM_FILE = "md5sum.txt"
VERSION_DIR = ".disk"
VERSION_INFO_FILE = "info"
VERSION_JSON_FILE = "emcomm-build.json"

# Never listed in md5sum.txt
MD5_EXCLUDES = {MD5SUM_FILE, "boot.catalog", "isolinux/boot.cat"}


def squashfs_command(
    source: Path, dest: Path, compression: str = "xz"
) -> list[str | Path]:
    """Compose the mksquashfs command line."""
    cmd: list[str | Path] = [
        "mksquashfs",
        source,
        dest,
        "-comp",
        compression,
        "-b",
        "1M",
        "-noappend",
    ]
    if compression == "xz":
        cmd.extend(["-Xbcj", "x86"])
    return cmd


def tree_size(root: Path) -> int:
    """Total size in bytes of regular files below root, symlinks not followed."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                total += os.lstat(path).st_size
    return total


def rebuild_squashfs(ctx: ImageContext, compression: str = "xz") -> Path:
    """Rebuild filesystem.squashfs and filesystem.size from the root tree.

    Returns:
        Path of the replaced squashfs file.

    Raises:
        RepackError: If mksquashfs fails.
    """
    if ctx.squashfs_file is None:
        raise RepackError("Image has no squashfs file", code="no_squashfs")

    new_squashfs = ctx.work_dir / "filesystem.squashfs.new"
    logger.info("Rebuilding squashfs filesystem (this takes 10-20 minutes)")
    try:
        command.run_command(
            squashfs_command(ctx.squashfs_root, new_squashfs, compression),
            log_path=ctx.log_path,
        )
    except CommandError as e:
        new_squashfs.unlink(missing_ok=True)
        raise RepackError(f"mksquashfs failed: {e}", code="squashfs_failed") from e

    os.replace(new_squashfs, ctx.squashfs_file)
    size = tree_size(ctx.squashfs_root)
    (ctx.squashfs_file.parent / "filesystem.size").write_text(f"{size}\n", encoding="utf-8")
    logger.info("Squashfs rebuilt (%d bytes unpacked)", size)
    return ctx.squashfs_file


def write_version_metadata(iso_root: Path, metadata: Mapping[str, object]) -> Path:
    """Write the version descriptor into the ISO tree.

    Args:
        iso_root: Extracted ISO tree.
        metadata: Build facts (release tag, version, base image, tool version).

    Returns:
        Path of the JSON descriptor.
    """
    disk_dir = iso_root / VERSION_DIR
    disk_dir.mkdir(parents=True, exist_ok=True)

    built_at = metadata.get("built_at") or datetime.now(timezone.utc).isoformat()
    descriptor = {**metadata, "built_at": built_at}
    info_line = (
        f"EmComm Tools Community {metadata.get('release_tag', 'unknown')} "
        f"(custom build {str(built_at)[:10]})"
    )
    (disk_dir / VERSION_INFO_FILE).write_text(info_line, encoding="utf-8")

    json_path = disk_dir / VERSION_JSON_FILE
    json_path.write_text(
        json.dumps(descriptor, indent=2, sort_keys=True, default=str) + "\n",
        encoding="utf-8",
    )
    return json_path


def write_md5sums(iso_root: Path) -> Path:
    """Regenerate md5sum.txt in the format used by casper's integrity check."""
    entries: list[str] = []
    for path in sorted(p for p in iso_root.rglob("*") if p.is_file() and not p.is_symlink()):
        rel = path.relative_to(iso_root).as_posix()
        if rel in MD5_EXCLUDES:
            continue
        md5 = hashlib.md5()
        with path.open("rb") as f:
            while chunk := f.read(1024 * 1024):
                md5.update(chunk)
        entries.append(f"{md5.hexdigest()}  ./{rel}")

    md5_path = iso_root / MD5SUM_FILE
    md5_path.write_text("\n".join(entries) + "\n", encoding="utf-8")
    logger.debug("Wrote %d checksums to %s", len(entries), md5_path)
    return md5_path


def xorriso_command(
    iso_root: Path, output: Path, volume_label: str, uefi: bool = True
) -> list[str | Path]:
    """Compose the xorriso mkisofs-emulation command line."""
    cmd: list[str | Path] = [
        "xorriso",
        "-as",
        "mkisofs",
        "-r",
        "-V",
        volume_label,
        "-iso-level",
        "3",
        "-J",
        "-joliet-long",
        "-l",
    ]
    if uefi:
        cmd.extend(
            [
                "-eltorito-alt-boot",
                "-e",
                EFI_IMAGE,
                "-no-emul-boot",
                "-append_partition",
                "2",
                "0xef",
                iso_root / EFI_IMAGE,
            ]
        )
    cmd.extend(["-o", output, iso_root])
    return cmd


def build_iso(ctx: ImageContext, output: Path, volume_label: str) -> Path:
    """Produce the ISO image, falling back to a plain ISO without UEFI boot.

    Raises:
        RepackError: If no non-empty ISO could be produced.
    """
    output.parent.mkdir(parents=True, exist_ok=True)
    output.unlink(missing_ok=True)

    attempts = [False]
    if (ctx.iso_root / EFI_IMAGE).exists():
        attempts.insert(0, True)
    else:
        logger.warning("EFI boot image %s not found, building a plain ISO", EFI_IMAGE)

    last_error: CommandError | None = None
    for uefi in attempts:
        try:
            command.run_command(
                xorriso_command(ctx.iso_root, output, volume_label, uefi=uefi),
                log_path=ctx.log_path,
            )
        except CommandError as e:
            last_error = e
            logger.warning("xorriso (%s) failed: %s", "UEFI" if uefi else "plain", e)
            continue
        if output.exists() and output.stat().st_size > 0:
            return output
        logger.warning("xorriso produced no output at %s", output)

    raise RepackError(
        f"ISO creation failed: {last_error or 'empty output'}", code="iso_failed"
    )


def pack(
    ctx: ImageContext,
    output: Path,
    volume_label: str,
    metadata: Mapping[str, object],
    compression: str = "xz",
) -> Path:
    """Repack an unmounted image into a bootable ISO.

    Args:
        ctx: Image context; must be unmounted.
        output: ISO path to write.
        volume_label: ISO volume label.
        metadata: Version descriptor contents.
        compression: squashfs compressor.

    Returns:
        Path of the produced ISO.

    Raises:
        RepackError: If the image is not unmounted or any step fails.
    """
    if ctx.state != MountState.UNMOUNTED:
        raise RepackError(
            f"Image must be unmounted before repacking (state {ctx.state.value})",
            code="not_unmounted",
        )

    rebuild_squashfs(ctx, compression)
    write_version_metadata(ctx.iso_root, metadata)
    write_md5sums(ctx.iso_root)
    iso = build_iso(ctx, output, volume_label)

    size_mib = iso.stat().st_size / (1024 * 1024)
    logger.info("ISO created: %s (%.0f MiB)", iso, size_mib)
    return iso


__all__ = [
    "build_iso",
    "pack",
    "rebuild_squashfs",
    "squashfs_command",
    "tree_size",
    "write_md5sums",
    "write_version_metadata",
    "xorriso_command",
]
