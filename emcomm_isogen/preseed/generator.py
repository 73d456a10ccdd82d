"""Unattended install preseed generation.

This module handles:
- Building a PreseedProfile (password hash only) from the station configuration
- Choosing a partitioning strategy, inspecting the disk layout for auto-detect
- Rendering the preseed text and the boot parameters that load it
- Writing the preseed into the ISO root and patching the boot loader config
- Parsing preseed text back into question/value pairs

Whole-disk installs erase the target disk and require explicit confirmation.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from emcomm_isogen.errors import CommandError, PreseedGenerationError
from emcomm_isogen.image import command
from emcomm_isogen.image.mount import ImageContext
from emcomm_isogen.station.schema import StationSchema
from emcomm_isogen.types import PartitionStrategy

logger = logging.getLogger(__name__)

PRESEED_REL_PATH = "preseed/custom.preseed"
BOOT_PARAMS = "file=/cdrom/preseed/custom.preseed auto=true priority=critical"
BOOT_CONFIGS = ("boot/grub/grub.cfg", "boot/grub/loopback.cfg")

USER_GROUPS = "adm cdrom dialout dip lpadmin plugdev sambashare sudo"

# Minimum unallocated space for a free-space install
MIN_FREE_BYTES = 25 * 1024**3

DISK_PATTERN = re.compile(r"^/dev/(?:nvme\d+n\d+|mmcblk\d+|loop\d+|[shv]d[a-z]+|xvd[a-z]+)$")
SEED_REF_PATTERN = re.compile(r"file=/cdrom/preseed/\S+\.seed")

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,START,MOUNTPOINT,FSTYPE"


class PreseedProfile(BaseModel):
    """Everything the preseed needs. Never holds a plaintext password."""

    model_config = ConfigDict(extra="forbid")

    strategy: PartitionStrategy = Field(default=PartitionStrategy.AUTO_DETECT)
    locale: str = Field(default="en_US.UTF-8")
    keyboard_layout: str = Field(default="us")
    timezone: str = Field(default="America/Denver")
    hostname: str
    fullname: str = Field(default="EmComm User")
    username: str
    password_hash: str | None = Field(default=None)
    install_disk: str = Field(default="/dev/sda5")
    swap: str | None = Field(default=None)
    confirm_entire_disk: bool = Field(default=False)
    packages: list[str] = Field(default_factory=list)

    @field_validator("password_hash")
    @classmethod
    def validate_password_hash(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("$"):
            raise ValueError("password_hash must be a crypt(3) hash")
        return v


@dataclass(frozen=True)
class PreseedOutput:
    """Rendered preseed.

    Attributes:
        preseed_text: File contents.
        boot_params: Kernel parameters that load the preseed.
        strategy: Resolved partitioning strategy (never auto-detect).
    """

    preseed_text: str
    boot_params: str
    strategy: PartitionStrategy


def hash_password(password: str) -> str:
    """Hash a password with SHA-512 crypt via openssl.

    The password goes through stdin and is never logged.

    Raises:
        PreseedGenerationError: If openssl fails or prints no hash.
    """
    try:
        result = command.run_command(
            ["openssl", "passwd", "-6", "-stdin"],
            input_text=password + "\n",
            capture=True,
        )
    except CommandError as e:
        raise PreseedGenerationError(
            f"Failed to hash password: {e}", code="hash_failed"
        ) from e
    for line in reversed(result.lines):
        if line.startswith("$6$"):
            return line.strip()
    raise PreseedGenerationError("openssl printed no password hash", code="hash_failed")


def profile_from_station(station: StationSchema) -> PreseedProfile:
    """Build a PreseedProfile, hashing a plaintext password if one is configured."""
    password_hash = station.user.password_hash
    if password_hash is None and station.user.password:
        password_hash = hash_password(station.user.password)
    return PreseedProfile(
        strategy=station.install.strategy,
        locale=station.locale.locale,
        keyboard_layout=station.locale.keyboard_layout,
        timezone=station.locale.timezone,
        hostname=station.hostname,
        fullname=station.user.fullname,
        username=station.username,
        password_hash=password_hash,
        install_disk=station.install.disk,
        swap=station.install.swap,
        confirm_entire_disk=station.install.confirm_entire_disk,
        packages=list(station.install.packages),
    )


def is_whole_disk(device: str) -> bool:
    return bool(DISK_PATTERN.match(device))


def parent_disk(device: str) -> str:
    """Return the disk holding a partition (/dev/nvme0n1p2 -> /dev/nvme0n1)."""
    if is_whole_disk(device):
        return device
    match = re.match(r"^(/dev/(?:nvme\d+n\d+|mmcblk\d+|loop\d+))p\d+$", device)
    if match:
        return match.group(1)
    return re.sub(r"\d+$", "", device)


def read_layout(log_path: Path | None = None) -> dict[str, Any]:
    """Read the block device layout with lsblk -J.

    Raises:
        CommandError: If lsblk fails.
    """
    result = command.run_command(
        ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS],
        log_path=log_path,
        capture=True,
    )
    return json.loads(result.output)


def load_layout(path: Path) -> dict[str, Any]:
    """Load an ``lsblk -J`` layout captured on the target machine.

    Raises:
        PreseedGenerationError: If the file is not a block device layout.
    """
    try:
        layout = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise PreseedGenerationError(
            f"Cannot read disk layout {path}: {e}", code="layout_invalid"
        ) from e
    if not isinstance(layout, dict) or not isinstance(layout.get("blockdevices"), list):
        raise PreseedGenerationError(
            f"{path} is not lsblk -J output (no blockdevices list)", code="layout_invalid"
        )
    return layout


def _find_device(layout: dict[str, Any], path: str) -> dict[str, Any] | None:
    stack = list(layout.get("blockdevices", []))
    while stack:
        device = stack.pop()
        if device.get("path") == path or f"/dev/{device.get('name')}" == path:
            return device
        stack.extend(device.get("children") or [])
    return None


def _free_bytes(disk: dict[str, Any]) -> int:
    used = sum(int(child.get("size") or 0) for child in disk.get("children") or [])
    return int(disk.get("size") or 0) - used


def detect_strategy(
    profile: PreseedProfile, layout: dict[str, Any] | None = None
) -> PartitionStrategy:
    """Choose the least destructive viable strategy for the install disk.

    Without a layout the install disk form decides: a partition path means
    existing-partition, a whole-disk path means entire-disk.

    Raises:
        PreseedGenerationError: If the layout rules out every strategy.
    """
    device = profile.install_disk
    if layout is None:
        if is_whole_disk(device):
            return PartitionStrategy.ENTIRE_DISK
        return PartitionStrategy.EXISTING_PARTITION

    found = _find_device(layout, device)
    if found is None:
        raise PreseedGenerationError(
            f"Install disk {device} not found in the block device layout",
            code="disk_not_found",
        )
    if found.get("type") == "part":
        if found.get("mountpoint"):
            raise PreseedGenerationError(
                f"Install partition {device} is mounted at {found['mountpoint']}",
                code="partition_in_use",
            )
        return PartitionStrategy.EXISTING_PARTITION

    if _free_bytes(found) >= MIN_FREE_BYTES:
        return PartitionStrategy.FREE_SPACE
    if not found.get("children"):
        return PartitionStrategy.ENTIRE_DISK
    if profile.confirm_entire_disk:
        return PartitionStrategy.ENTIRE_DISK
    raise PreseedGenerationError(
        f"{device} has no free space and existing partitions; set "
        "install.confirm_entire_disk to erase it or choose a partition",
        code="no_viable_strategy",
    )


def partman_lines(profile: PreseedProfile, strategy: PartitionStrategy) -> list[str]:
    """Partitioning answers for a resolved strategy."""
    if strategy == PartitionStrategy.EXISTING_PARTITION:
        if is_whole_disk(profile.install_disk):
            raise PreseedGenerationError(
                f"{profile.install_disk} is a whole disk, not a partition",
                code="not_a_partition",
            )
        return [
            "d-i partman-auto/method string regular",
            "d-i partman-basicfilesystems/format_swap_bootable boolean false",
            "d-i partman-partitioning/confirm_write_new_label boolean true",
            "d-i partman-partitioning/default_filesystem string ext4",
        ]
    disk = parent_disk(profile.install_disk)
    if strategy == PartitionStrategy.ENTIRE_DISK:
        if not profile.confirm_entire_disk:
            raise PreseedGenerationError(
                f"Installing to all of {disk} erases it; set "
                "install.confirm_entire_disk to confirm",
                code="entire_disk_unconfirmed",
            )
        logger.warning("Entire-disk install confirmed: %s will be erased", disk)
        return [
            f"d-i partman-auto/disk string {disk}",
            "d-i partman-auto/method string lvm",
            "d-i partman-lvm/device_remove_lvm boolean true",
            "d-i partman-lvm/confirm boolean true",
            "d-i partman-lvm/confirm_nooverwrite boolean true",
            "d-i partman-auto/choose_recipe select atomic",
            "d-i partman-partitioning/confirm_write_new_label boolean true",
        ]
    if strategy == PartitionStrategy.FREE_SPACE:
        return [
            f"d-i partman-auto/disk string {disk}",
            "d-i partman-auto/method string regular",
            "d-i partman-auto/init_automatically_partition select biggest_free",
            "d-i partman-auto/choose_recipe select atomic",
            "d-i partman-partitioning/confirm_write_new_label boolean true",
        ]
    raise PreseedGenerationError(f"Unresolved strategy {strategy.value}", code="bad_strategy")


def generate(profile: PreseedProfile, layout: dict[str, Any] | None = None) -> PreseedOutput:
    """Render the preseed for a profile.

    Args:
        profile: Preseed profile.
        layout: Parsed ``lsblk -J`` output used by auto-detect.

    Returns:
        PreseedOutput.

    Raises:
        PreseedGenerationError: If the profile is inconsistent.
    """
    strategy = profile.strategy
    if strategy == PartitionStrategy.AUTO_DETECT:
        strategy = detect_strategy(profile, layout)
        logger.info("Auto-detected partitioning strategy: %s", strategy.value)

    lines = [
        "# Ubuntu preseed for unattended EmComm Tools installation",
        f"# Partitioning strategy: {strategy.value}",
        "",
        "# Keyboard and localization",
        f"d-i keyboard-configuration/layoutcode string {profile.keyboard_layout}",
        f"d-i keyboard-configuration/xkb-keymap select {profile.keyboard_layout}",
        f"d-i debian-installer/locale string {profile.locale}",
        f"d-i localtime/set-timezone select {profile.timezone}",
        f"d-i time/zone string {profile.timezone}",
        "d-i clock-setup/utc boolean true",
        "d-i clock-setup/ntp boolean true",
        "",
        "# Network (DHCP)",
        "d-i netcfg/choose_interface select auto",
        f"d-i netcfg/get_hostname string {profile.hostname}",
        "d-i netcfg/get_domain string local",
        f"d-i netcfg/hostname string {profile.hostname}",
        "d-i hw-detect/load_firmware boolean true",
        "",
        "# Mirror",
        "d-i mirror/country string manual",
        "d-i mirror/http/hostname string old-releases.ubuntu.com",
        "d-i mirror/http/directory string /ubuntu",
        "d-i mirror/http/proxy string",
        "",
        "# Account",
        f"d-i passwd/user-fullname string {profile.fullname}",
        f"d-i passwd/username string {profile.username}",
    ]
    if profile.password_hash:
        lines.append(f"d-i passwd/user-password-crypted password {profile.password_hash}")
    else:
        logger.warning("No password configured, the installer will ask for one")
    lines += [
        f"d-i passwd/user-default-groups string {USER_GROUPS}",
        "d-i passwd/root-login boolean false",
        "d-i user-setup/allow-password-weak boolean true",
        "d-i user-setup/encrypt-home boolean false",
        "",
        "# Partitioning",
        *partman_lines(profile, strategy),
        "d-i partman/mount_style select uuid",
        "d-i partman/choose_partition select finish",
        "d-i partman/confirm boolean true",
        "d-i partman/confirm_nooverwrite boolean true",
    ]
    if profile.swap:
        lines.append(f"# Swap partition: {profile.swap}")
    lines += [
        "",
        "# Boot loader",
        "d-i grub-installer/only_debian boolean true",
        "d-i grub-installer/with_other_os boolean true",
        f"d-i grub-installer/bootdev string {parent_disk(profile.install_disk)}",
        "",
        "# Packages",
        "tasksel tasksel/first multiselect ubuntu-desktop",
    ]
    if profile.packages:
        lines.append(f"d-i pkgsel/include string {' '.join(profile.packages)}")
    lines += [
        "d-i pkgsel/upgrade select none",
        "popularity-contest popularity-contest/participate boolean false",
        "",
        "# Finish",
        "ubiquity ubiquity/reboot_without_asking boolean true",
        "d-i finish-install/reboot_in_background boolean true",
        "d-i cdrom-detect/eject boolean true",
    ]
    return PreseedOutput(
        preseed_text="\n".join(lines) + "\n",
        boot_params=BOOT_PARAMS,
        strategy=strategy,
    )


def parse_preseed(text: str) -> dict[str, str]:
    """Parse preseed text into {question: value}."""
    answers: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 3)
        if len(parts) < 3:
            raise ValueError(f"malformed preseed line: {raw!r}")
        _owner, question, _type = parts[:3]
        answers[question] = parts[3] if len(parts) == 4 else ""
    return answers


def strategy_from_answers(answers: dict[str, str]) -> PartitionStrategy:
    """Recover the partitioning strategy from parsed answers."""
    if answers.get("partman-auto/method") == "lvm":
        return PartitionStrategy.ENTIRE_DISK
    if answers.get("partman-auto/init_automatically_partition") == "biggest_free":
        return PartitionStrategy.FREE_SPACE
    return PartitionStrategy.EXISTING_PARTITION


def patch_boot_config(text: str, boot_params: str = BOOT_PARAMS) -> str:
    """Make every kernel line load the preseed. Idempotent."""
    out: list[str] = []
    for line in text.splitlines(keepends=True):
        stripped = line.lstrip()
        if stripped.startswith("linux") and boot_params not in line:
            if SEED_REF_PATTERN.search(line):
                line = SEED_REF_PATTERN.sub(boot_params, line)
            elif " ---" in line:
                line = line.replace(" ---", f" {boot_params} ---", 1)
            else:
                ending = "\n" if line.endswith("\n") else ""
                line = f"{line.rstrip()} {boot_params}{ending}"
        out.append(line)
    return "".join(out)


def _inside(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def write(output: PreseedOutput, ctx: ImageContext) -> Path:
    """Write the preseed into the ISO root and patch the boot configs.

    Raises:
        PreseedGenerationError: If the target lies inside the squashfs tree.
    """
    target = ctx.iso_root / PRESEED_REL_PATH
    if _inside(target, ctx.squashfs_root):
        raise PreseedGenerationError(
            f"Refusing to write preseed inside the root filesystem: {target}",
            code="target_in_squashfs",
        )
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(output.preseed_text, encoding="utf-8")
    target.chmod(0o644)
    logger.info("Preseed written to /%s (%s)", PRESEED_REL_PATH, output.strategy.value)

    patched = 0
    for rel in BOOT_CONFIGS:
        cfg = ctx.iso_root / rel
        if not cfg.is_file():
            logger.debug("Boot config /%s not present", rel)
            continue
        if _inside(cfg, ctx.squashfs_root):
            raise PreseedGenerationError(
                f"Refusing to patch boot config inside the root filesystem: {cfg}",
                code="target_in_squashfs",
            )
        content = cfg.read_text(encoding="utf-8")
        updated = patch_boot_config(content, output.boot_params)
        if updated != content:
            cfg.write_text(updated, encoding="utf-8")
            patched += 1
    if not (ctx.iso_root / BOOT_CONFIGS[0]).is_file():
        logger.warning("GRUB config /%s not found, preseed will not load", BOOT_CONFIGS[0])
    logger.debug("Patched %d boot config(s)", patched)
    return target


__all__ = [
    "BOOT_PARAMS",
    "PRESEED_REL_PATH",
    "PreseedOutput",
    "PreseedProfile",
    "detect_strategy",
    "generate",
    "hash_password",
    "is_whole_disk",
    "load_layout",
    "parent_disk",
    "parse_preseed",
    "patch_boot_config",
    "profile_from_station",
    "read_layout",
    "strategy_from_answers",
    "write",
]
