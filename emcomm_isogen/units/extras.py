"""Overlay, restore and station extras units.

This module handles:
- Copying the community add-ons overlay into the image
- Restoring golden-master and rolling backups into /etc/skel
- Git identity, VARA license import files
- Embedding the build cache and writing the customization manifest
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from emcomm_isogen import __version__
from emcomm_isogen.backups.coordinator import restore
from emcomm_isogen.types import BackupKind, UnitOutcome
from emcomm_isogen.units.files import write_file
from emcomm_isogen.units.registry import UnitSkipped

if TYPE_CHECKING:
    from emcomm_isogen.builds.context import BuildContext

logger = logging.getLogger(__name__)

SKEL_DIR = "etc/skel"
GITCONFIG = "etc/skel/.gitconfig"
WINE_ADDONS_DIR = "etc/skel/add-ons/wine"
VARA_IMPORT_SCRIPT = f"{WINE_ADDONS_DIR}/99-import-vara-licenses.sh"
EMBEDDED_CACHE_DIR = "opt/emcomm-customizer-cache"
CUSTOMIZATIONS_MANIFEST = "etc/emcomm-customizations-manifest.txt"
CUSTOMIZATIONS_MANIFEST_UNIT = "customization-manifest"

GIT_TEMPLATE_VALUES = {"Your Full Name", "your.email@example.com"}


def apply_addons_overlay(root: Path, build: BuildContext) -> None:
    """Copy the unpacked add-ons overlay over the image root."""
    overlay = build.addons_overlay
    if overlay is None:
        raise UnitSkipped("add-ons not requested")
    if not overlay.is_dir():
        raise FileNotFoundError(f"Add-ons overlay {overlay} is missing")
    shutil.copytree(overlay, root, symlinks=True, dirs_exist_ok=True)
    logger.info("Add-ons overlay applied from %s", overlay)


def apply_restore_golden_master(root: Path, build: BuildContext) -> None:
    """Restore the newest readable golden-master backup into /etc/skel."""
    report = restore(
        root / SKEL_DIR, build.golden_sets, BackupKind.GOLDEN_MASTER, build.manifest
    )
    if not report.ok:
        raise UnitSkipped(_no_restore_reason(report.attempts))


def apply_restore_rolling(root: Path, build: BuildContext) -> None:
    """Restore the fresh rolling capture, or the last known good one."""
    report = restore(
        root / SKEL_DIR,
        build.rolling_sets,
        BackupKind.ROLLING,
        build.manifest,
        backups_dir=build.backups_dir,
    )
    if not report.ok:
        raise UnitSkipped(_no_restore_reason(report.attempts))


def _no_restore_reason(attempts: list) -> str:
    failed = sum(1 for _, outcome, _ in attempts if outcome == UnitOutcome.FAILED)
    if not attempts:
        return "no backup sets"
    return f"no usable backup ({len(attempts)} tried, {failed} corrupt)"


def apply_git_config(root: Path, build: BuildContext) -> None:
    """Write a default .gitconfig for new users."""
    user = build.station.user
    if not user.email or {user.fullname, user.email} & GIT_TEMPLATE_VALUES:
        raise UnitSkipped("no git identity configured")
    write_file(
        root,
        GITCONFIG,
        "[user]\n"
        f"    name = {user.fullname}\n"
        f"    email = {user.email}\n"
        "[init]\n"
        "    defaultBranch = main\n"
        "[pull]\n"
        "    rebase = false\n",
    )
    logger.info("Git configured for %s", user.fullname)


def _vara_reg(key_path: str, callsign: str, license_key: str) -> str:
    return (
        "REGEDIT4\n"
        "\n"
        f"[HKEY_CURRENT_USER\\Software\\{key_path}]\n"
        f'"Callsign"="{callsign}"\n'
        f'"License"="{license_key}"\n'
    )


VARA_IMPORT_HEADER = """#!/bin/bash
# Run after installing VARA to register the licenses
set -e

SCRIPT_DIR="$(cd "$(dirname "${BASH_SOURCE[0]}")" && pwd)"

if [ ! -d "$HOME/.wine32" ]; then
    echo "ERROR: Wine prefix ~/.wine32 not found, install VARA first"
    exit 1
fi

export WINEPREFIX="$HOME/.wine32"
"""

VARA_IMPORT_STEP = """
if [ -f "$SCRIPT_DIR/{reg}" ]; then
    echo "Importing {label} license..."
    wine regedit "$SCRIPT_DIR/{reg}"
fi
"""


def apply_vara_license(root: Path, build: BuildContext) -> None:
    """Write VARA license registry files and their import script."""
    vara = build.station.vara
    if not vara.has_licenses:
        raise UnitSkipped("no VARA license keys configured")

    script = VARA_IMPORT_HEADER
    licenses = [
        ("vara-fm-license.reg", "VARA FM", "VARA FM", vara.fm_callsign, vara.fm_license_key),
        ("vara-hf-license.reg", "VARA HF", "VARA", vara.hf_callsign, vara.hf_license_key),
    ]
    for reg, label, key_path, callsign, license_key in licenses:
        if not license_key:
            continue
        write_file(
            root,
            f"{WINE_ADDONS_DIR}/{reg}",
            _vara_reg(key_path, callsign or build.station.callsign, license_key),
        )
        script += VARA_IMPORT_STEP.format(reg=reg, label=label)
        logger.info("%s license registry file created", label)
    script += '\necho "License import complete, restart VARA to verify."\n'
    write_file(root, VARA_IMPORT_SCRIPT, script, mode=0o755)


def _copy_if_changed(source: Path, dest_dir: Path) -> Path:
    dest = dest_dir / source.name
    if not dest.exists() or dest.stat().st_size != source.stat().st_size:
        shutil.copy2(source, dest)
    return dest


def apply_embed_cache(root: Path, build: BuildContext) -> None:
    """Embed fetched artifacts, station config and logs for future rebuilds."""
    if build.minimal:
        raise UnitSkipped("minimal build")

    target = root / EMBEDDED_CACHE_DIR
    logs_dir = target / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    embedded: list[str] = []
    for artifact in build.artifacts.values():
        if artifact.cache_path.is_file():
            embedded.append(_copy_if_changed(artifact.cache_path, target).name)
    station_config = build.settings.station_config
    if station_config and station_config.is_file():
        embedded.append(_copy_if_changed(station_config, target).name)
    if build.log_path and build.log_path.is_file():
        shutil.copy2(build.log_path, logs_dir / build.log_path.name)
    build.manifest.write_json(logs_dir / "BUILD_MANIFEST.json")

    listing = "\n".join(f"  - {name}" for name in sorted(embedded)) or "  (none)"
    write_file(
        root,
        f"{EMBEDDED_CACHE_DIR}/README.txt",
        "EmComm Tools Customizer - Embedded Cache\n"
        "=========================================\n"
        "\n"
        "Files embedded at build time so the next build needs no downloads.\n"
        "To reuse them:\n"
        f"  cp /{EMBEDDED_CACHE_DIR}/* ~/.cache/emcomm-isogen/\n"
        "\n"
        f"Build logs: /{EMBEDDED_CACHE_DIR}/logs/\n"
        "\n"
        f"Files:\n{listing}\n",
    )
    logger.info("Embedded %d cache file(s) into /%s", len(embedded), EMBEDDED_CACHE_DIR)


def apply_customization_manifest(root: Path, build: BuildContext) -> None:
    """Write a human-readable summary of the customizations into the image."""
    station = build.station
    release = build.release
    # A unit applied again keeps its first position
    applied = dict.fromkeys(
        e.name
        for e in build.manifest.units()
        if e.outcome == UnitOutcome.APPLIED and e.name != CUSTOMIZATIONS_MANIFEST_UNIT
    )
    lines = [
        "EmComm Tools Community - Customizations",
        f"Build Date: {build.started_at:%Y-%m-%d %H:%M:%S} UTC",
        f"Release: {release.tag if release else 'unknown'}",
        f"Version: {release.version if release else 'unknown'}",
        f"Built with: emcomm-isogen {__version__}",
        "",
        "=== STATION ===",
        f"- Callsign: {station.callsign}",
        f"- Hostname: {station.hostname}",
        f"- Username: {station.username}",
        f"- Timezone: {station.locale.timezone}",
        f"- Wi-Fi networks: {', '.join(sorted(station.networks)) or 'none'}",
        f"- Autologin: {'yes' if station.user.autologin else 'no'}",
        f"- Additional packages: {' '.join(station.additional_packages) or 'none'}",
        "",
        "=== UNITS APPLIED ===",
        *(f"- {name}" for name in applied),
    ]
    write_file(root, CUSTOMIZATIONS_MANIFEST, "\n".join(lines) + "\n")


__all__ = [
    "apply_addons_overlay",
    "apply_customization_manifest",
    "apply_embed_cache",
    "apply_git_config",
    "apply_restore_golden_master",
    "apply_restore_rolling",
    "apply_vara_license",
]
