"""Default customization units, in application order."""

from emcomm_isogen.types import UnitPolicy, UnitStage
from emcomm_isogen.units import desktop, extras, system
from emcomm_isogen.units.network import CONNECTIONS_DIR
from emcomm_isogen.units.registry import CustomizationUnit, Registry

CORE = UnitPolicy.CORE
DEFERRABLE = UnitPolicy.DEFERRABLE


def default_units() -> list[CustomizationUnit]:
    return [
        CustomizationUnit(
            name="addons-overlay",
            stage=UnitStage.BASE_OVERLAY,
            policy=DEFERRABLE,
            writes=("**",),
            apply=extras.apply_addons_overlay,
            description="Community add-ons overlay",
        ),
        CustomizationUnit(
            name="hostname",
            stage=UnitStage.BASELINE,
            policy=CORE,
            writes=("etc/hostname", "etc/hosts"),
            apply=system.apply_hostname,
            description="Hostname from callsign",
        ),
        CustomizationUnit(
            name="wifi-networks",
            stage=UnitStage.BASELINE,
            policy=CORE,
            writes=(f"{CONNECTIONS_DIR}/**",),
            apply=system.apply_wifi_networks,
            description="NetworkManager Wi-Fi profiles",
        ),
        CustomizationUnit(
            name="desktop-defaults",
            stage=UnitStage.BASELINE,
            policy=CORE,
            writes=(desktop.DCONF_PROFILE, desktop.DESKTOP_KEYFILE),
            apply=desktop.apply_desktop_defaults,
            description="GNOME desktop preferences",
        ),
        CustomizationUnit(
            name="user-account",
            stage=UnitStage.BASELINE,
            policy=CORE,
            writes=(
                system.AUTOLOGIN_CONF,
                system.SHADOW_FILE,
                system.FIRST_BOOT_PASSWORD_SCRIPT,
            ),
            apply=system.apply_user_account,
            description="Autologin and user password",
        ),
        CustomizationUnit(
            name="timezone",
            stage=UnitStage.BASELINE,
            policy=CORE,
            writes=("etc/localtime", "etc/timezone"),
            apply=system.apply_timezone,
            description="System timezone",
        ),
        CustomizationUnit(
            name="restore-golden-master",
            stage=UnitStage.GOLDEN_RESTORE,
            policy=DEFERRABLE,
            writes=(f"{extras.SKEL_DIR}/**",),
            apply=extras.apply_restore_golden_master,
            description="Restore golden-master backup into /etc/skel",
        ),
        CustomizationUnit(
            name="restore-rolling",
            stage=UnitStage.ROLLING_RESTORE,
            policy=DEFERRABLE,
            writes=(f"{extras.SKEL_DIR}/**",),
            apply=extras.apply_restore_rolling,
            description="Restore rolling backup into /etc/skel",
        ),
        CustomizationUnit(
            name="git-config",
            stage=UnitStage.FINAL_CONFIG,
            policy=DEFERRABLE,
            writes=(extras.GITCONFIG,),
            apply=extras.apply_git_config,
            description="Default git identity",
        ),
        CustomizationUnit(
            name="power-settings",
            stage=UnitStage.FINAL_CONFIG,
            policy=CORE,
            writes=(desktop.POWER_KEYFILE, desktop.DCONF_COMPILED_DB),
            apply=desktop.apply_power_settings,
            description="Power management defaults",
        ),
        CustomizationUnit(
            name="vara-license",
            stage=UnitStage.FINAL_CONFIG,
            policy=DEFERRABLE,
            writes=(f"{extras.WINE_ADDONS_DIR}/**",),
            apply=extras.apply_vara_license,
            description="VARA license import files",
        ),
        CustomizationUnit(
            name="additional-packages",
            stage=UnitStage.FINAL_CONFIG,
            policy=CORE,
            writes=("usr/**", "var/lib/dpkg/**", "var/cache/apt/**", "var/lib/apt/**"),
            apply=system.apply_additional_packages,
            description="Extra apt packages",
        ),
        CustomizationUnit(
            name="embed-cache",
            stage=UnitStage.FINALIZE,
            policy=DEFERRABLE,
            writes=(f"{extras.EMBEDDED_CACHE_DIR}/**",),
            apply=extras.apply_embed_cache,
            description="Embed build cache for future rebuilds",
        ),
        CustomizationUnit(
            name=extras.CUSTOMIZATIONS_MANIFEST_UNIT,
            stage=UnitStage.FINALIZE,
            policy=DEFERRABLE,
            writes=(extras.CUSTOMIZATIONS_MANIFEST,),
            apply=extras.apply_customization_manifest,
            description="Customization summary",
        ),
    ]


def default_registry() -> Registry:
    """Registry with every shipped unit in default order."""
    return Registry(default_units())


__all__ = ["default_registry", "default_units"]
