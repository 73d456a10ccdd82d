"""GNOME desktop and power management defaults.

This module handles:
- The dconf profile and system database for desktop preferences
- Power management keys and compiling the dconf database
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from emcomm_isogen.image.mount import run_in_chroot
from emcomm_isogen.types import MountState
from emcomm_isogen.units.files import write_file

if TYPE_CHECKING:
    from emcomm_isogen.builds.context import BuildContext

logger = logging.getLogger(__name__)

DCONF_PROFILE = "etc/dconf/profile/user"
DCONF_DB_DIR = "etc/dconf/db/local.d"
DESKTOP_KEYFILE = f"{DCONF_DB_DIR}/00-emcomm-defaults"
POWER_KEYFILE = f"{DCONF_DB_DIR}/01-power-settings"
DCONF_COMPILED_DB = "etc/dconf/db/local"


def _bool(value: bool) -> str:
    return "true" if value else "false"


def render_desktop_keyfile(build: BuildContext) -> str:
    desktop = build.station.desktop
    theme = "Yaru-dark" if desktop.color_scheme == "prefer-dark" else "Yaru"
    sections = [
        "# EmComm desktop preferences\n"
        "[org/gnome/desktop/interface]\n"
        f"color-scheme='{desktop.color_scheme}'\n"
        f"gtk-theme='{theme}'\n"
        f"icon-theme='{theme}'\n"
        f"text-scaling-factor={desktop.scaling_factor}\n"
    ]
    if desktop.disable_accessibility:
        sections.append(
            "[org/gnome/desktop/a11y]\n"
            "always-show-universal-access-status=false\n"
            "\n"
            "[org/gnome/desktop/a11y/applications]\n"
            "screen-keyboard-enabled=false\n"
            "screen-reader-enabled=false\n"
            "\n"
            "[org/gnome/desktop/a11y/interface]\n"
            "high-contrast=false\n"
        )
    sections.append(
        "[org/gnome/desktop/session]\n"
        f"idle-delay=uint32 {desktop.screen_blank_timeout}\n"
        "\n"
        "[org/gnome/settings-daemon/plugins/power]\n"
        f"ambient-enabled={_bool(desktop.automatic_brightness)}\n"
        f"idle-dim={_bool(desktop.dim_screen)}\n"
    )
    return "\n".join(sections)


def apply_desktop_defaults(root: Path, build: BuildContext) -> None:
    """Write the dconf profile and desktop defaults.

    The database is compiled on first boot or by the power-settings unit.
    """
    write_file(root, DCONF_PROFILE, "user-db:user\nsystem-db:local\n")
    write_file(root, DESKTOP_KEYFILE, render_desktop_keyfile(build))
    logger.info(
        "Desktop preferences configured (%s, %sx)",
        build.station.desktop.color_scheme,
        build.station.desktop.scaling_factor,
    )


def render_power_keyfile(build: BuildContext) -> str:
    power = build.station.power
    idle_ac = power.idle_ac if power.automatic_suspend else "nothing"
    idle_battery = power.idle_battery if power.automatic_suspend else "nothing"
    return (
        "# EmComm power management\n"
        "[org/gnome/settings-daemon/plugins/power]\n"
        f"power-profile-daemon='{power.mode}'\n"
        f"lid-close-ac-action='{power.lid_close_ac}'\n"
        f"lid-close-battery-action='{power.lid_close_battery}'\n"
        f"power-button-action='{power.button_action}'\n"
        f"sleep-inactive-ac-type='{idle_ac}'\n"
        f"sleep-inactive-battery-type='{idle_battery}'\n"
        f"sleep-inactive-ac-timeout={power.idle_timeout}\n"
        f"sleep-inactive-battery-timeout={power.idle_timeout}\n"
        f"power-saver-profile-on-low-battery={_bool(power.automatic_power_saver)}\n"
    )


def apply_power_settings(root: Path, build: BuildContext) -> None:
    """Write power management defaults and compile the dconf database."""
    write_file(root, POWER_KEYFILE, render_power_keyfile(build))

    image = build.image
    if image is None or image.state != MountState.CHROOT_BOUND:
        logger.info("dconf database is compiled on first boot")
        return
    result = run_in_chroot(image, ["dconf", "update"], check=False)
    if result.returncode != 0:
        logger.warning("dconf update failed (exit %d), settings apply on first boot", result.returncode)
    logger.info("Power management configured")


__all__ = [
    "apply_desktop_defaults",
    "apply_power_settings",
    "render_desktop_keyfile",
    "render_power_keyfile",
]
