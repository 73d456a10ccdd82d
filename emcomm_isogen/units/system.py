"""System-level customization units.

This module handles:
- Hostname and /etc/hosts
- Wi-Fi network profiles
- User account password and display manager autologin
- System timezone
- Additional apt packages installed inside the chroot
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

from emcomm_isogen.image.mount import run_in_chroot
from emcomm_isogen.installer.runner import INSTALLER_ENV, use_archive_mirror
from emcomm_isogen.preseed.generator import hash_password
from emcomm_isogen.units.files import remove_file, write_file
from emcomm_isogen.units.network import write_profiles
from emcomm_isogen.units.registry import UnitSkipped

if TYPE_CHECKING:
    from emcomm_isogen.builds.context import BuildContext

logger = logging.getLogger(__name__)

AUTOLOGIN_CONF = "etc/lightdm/lightdm.conf.d/50-autologin.conf"
SHADOW_FILE = "etc/shadow"
FIRST_BOOT_PASSWORD_SCRIPT = "etc/profile.d/z99-set-user-password.sh"

HOSTS_TEMPLATE = """\
127.0.0.1       localhost
127.0.1.1       {hostname}
::1     ip6-localhost ip6-loopback
fe00::0 ip6-localnet
ff00::0 ip6-mcastprefix
ff02::1 ip6-allnodes
ff02::2 ip6-allrouters
"""


def apply_hostname(root: Path, build: BuildContext) -> None:
    """Set /etc/hostname and /etc/hosts from the station hostname."""
    hostname = build.station.hostname
    write_file(root, "etc/hostname", f"{hostname}\n")
    write_file(root, "etc/hosts", HOSTS_TEMPLATE.format(hostname=hostname))
    logger.info("Hostname configured: %s", hostname)


def apply_wifi_networks(root: Path, build: BuildContext) -> None:
    """Write one NetworkManager profile per configured Wi-Fi network."""
    networks = build.station.networks
    if not networks:
        raise UnitSkipped("no Wi-Fi networks configured")
    write_profiles(root, networks)


def _set_shadow_hash(shadow: Path, username: str, password_hash: str) -> bool:
    if not shadow.is_file():
        return False
    mode = stat.S_IMODE(shadow.stat().st_mode)
    lines = shadow.read_text(encoding="utf-8").splitlines(keepends=True)
    changed = False
    for i, line in enumerate(lines):
        fields = line.split(":")
        if fields[0] == username and len(fields) > 1:
            fields[1] = password_hash
            lines[i] = ":".join(fields)
            changed = True
    if changed:
        shadow.write_text("".join(lines), encoding="utf-8")
        os.chmod(shadow, mode)
    return changed


def _first_boot_script(username: str, password_hash: str) -> str:
    return f"""#!/bin/bash
# Sets the initial password for {username} once, then removes itself
if [ "$(id -u)" = "0" ] && [ -f /etc/shadow ]; then
    if grep -q '^{username}:' /etc/shadow; then
        usermod -p '{password_hash}' '{username}'
    fi
    rm -f "$0"
fi
"""


def apply_user_account(root: Path, build: BuildContext) -> None:
    """Configure autologin and the user's password hash."""
    user = build.station.user
    username = build.station.username

    if user.autologin:
        write_file(
            root,
            AUTOLOGIN_CONF,
            "[Seat:*]\n"
            f"autologin-user={username}\n"
            "autologin-user-timeout=0\n"
            "user-session=ubuntu\n",
        )
        logger.info("Autologin configured for %s", username)
    elif remove_file(root, AUTOLOGIN_CONF):
        logger.info("Autologin disabled")

    password_hash = user.password_hash
    if password_hash is None and user.password:
        password_hash = hash_password(user.password)
    if password_hash is None:
        logger.info("No password configured for %s", username)
        return

    if _set_shadow_hash(root / SHADOW_FILE, username, password_hash):
        remove_file(root, FIRST_BOOT_PASSWORD_SCRIPT)
        logger.info("Password hash set for %s", username)
    else:
        write_file(
            root,
            FIRST_BOOT_PASSWORD_SCRIPT,
            _first_boot_script(username, password_hash),
            mode=0o755,
        )
        logger.info("User %s not in shadow yet, password is set on first boot", username)


def apply_timezone(root: Path, build: BuildContext) -> None:
    """Point /etc/localtime at the configured zone and write /etc/timezone."""
    timezone = build.station.locale.timezone
    zoneinfo = Path("/usr/share/zoneinfo") / timezone
    if not (root / zoneinfo.relative_to("/")).exists():
        logger.warning("Zone file %s not found in image", zoneinfo)
    localtime = root / "etc" / "localtime"
    localtime.parent.mkdir(parents=True, exist_ok=True)
    if localtime.is_symlink() or localtime.exists():
        localtime.unlink()
    localtime.symlink_to(zoneinfo)
    write_file(root, "etc/timezone", f"{timezone}\n")
    logger.info("Timezone configured: %s", timezone)


def apply_additional_packages(root: Path, build: BuildContext) -> None:
    """Install extra apt packages inside the chroot."""
    packages = build.station.additional_packages
    if not packages:
        raise UnitSkipped("no additional packages configured")
    if build.image is None:
        raise UnitSkipped("no image to install into")

    use_archive_mirror(root)
    run_in_chroot(build.image, ["apt-get", "update"], env=INSTALLER_ENV)
    run_in_chroot(
        build.image,
        ["apt-get", "install", "-y", "-qq", *packages],
        env=INSTALLER_ENV,
    )
    logger.info("Installed packages: %s", " ".join(packages))


__all__ = [
    "apply_additional_packages",
    "apply_hostname",
    "apply_timezone",
    "apply_user_account",
    "apply_wifi_networks",
]
