"""Pydantic models for station configuration.

This module defines the typed station configuration: operator identity,
user account, Wi-Fi networks keyed by identifier, desktop and power
preferences, locale, unattended-install options and optional licenses.
All validation happens at load time, before any image is touched.
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from emcomm_isogen.types import PartitionStrategy

DEFAULT_CALLSIGN = "N0CALL"

# Network identifiers become file names and legacy variable suffixes
NETWORK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
CALLSIGN_PATTERN = re.compile(r"^[A-Za-z0-9/]{3,12}$")
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
TEMPLATE_PREFIX = "YOUR_"

DEFAULT_BACKUP_PATHS = [
    ".config/emcomm-tools",
    ".local/share/emcomm-tools",
    ".local/share/pat",
]


def _reject_template(value: str, field: str) -> str:
    if value.upper().startswith(TEMPLATE_PREFIX):
        raise ValueError(f"{field} still holds a template value: '{value}'")
    return value


class WifiNetworkSchema(BaseModel):
    """Schema for a WPA-PSK Wi-Fi network.

    Attributes:
        ssid: Network name (1-32 bytes).
        password: Pre-shared key (8-63 characters).
        autoconnect: Connect automatically when in range.
    """

    model_config = ConfigDict(extra="forbid")

    ssid: str = Field(description="Network SSID")
    password: str = Field(description="WPA2 pre-shared key")
    autoconnect: bool = Field(default=True)

    @field_validator("ssid")
    @classmethod
    def validate_ssid(cls, v: str) -> str:
        """Validate SSID length in bytes and reject template values."""
        size = len(v.encode("utf-8"))
        if not 1 <= size <= 32:
            raise ValueError(f"ssid must be 1-32 bytes, got {size}")
        return _reject_template(v, "ssid")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        """Validate WPA-PSK passphrase length."""
        if not 8 <= len(v) <= 63:
            raise ValueError(f"password must be 8-63 characters, got {len(v)}")
        return _reject_template(v, "password")


class UserSchema(BaseModel):
    """Schema for the primary user account."""

    model_config = ConfigDict(extra="forbid")

    fullname: str = Field(default="EmComm User")
    username: str | None = Field(
        default=None, description="Login name (defaults to lowercase callsign)"
    )
    password: str | None = Field(
        default=None, description="Plaintext password, hashed before use"
    )
    password_hash: str | None = Field(
        default=None, description="Pre-computed crypt(3) hash"
    )
    email: str | None = Field(default=None)
    autologin: bool = Field(default=False)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str | None) -> str | None:
        if v is not None and not USERNAME_PATTERN.match(v):
            raise ValueError(f"invalid username: '{v}'")
        return v

    @field_validator("password_hash")
    @classmethod
    def validate_password_hash(cls, v: str | None) -> str | None:
        """Validate the hash looks like a crypt(3) string."""
        if v is not None and not v.startswith("$"):
            raise ValueError("password_hash must be a crypt(3) hash starting with '$'")
        return v


class DesktopSchema(BaseModel):
    """Schema for GNOME desktop defaults."""

    model_config = ConfigDict(extra="forbid")

    color_scheme: str = Field(default="prefer-dark")
    scaling_factor: float = Field(default=1.0, gt=0, le=4)
    disable_accessibility: bool = Field(default=True)
    automatic_brightness: bool = Field(default=False)
    dim_screen: bool = Field(default=True)
    screen_blank_timeout: int = Field(default=300, ge=0)

    @field_validator("color_scheme")
    @classmethod
    def validate_color_scheme(cls, v: str) -> str:
        supported = {"default", "prefer-dark", "prefer-light"}
        if v not in supported:
            raise ValueError(f"color_scheme must be one of {supported}, got '{v}'")
        return v


class PowerSchema(BaseModel):
    """Schema for power management defaults."""

    model_config = ConfigDict(extra="forbid")

    mode: str = Field(default="balanced")
    lid_close_ac: str = Field(default="suspend")
    lid_close_battery: str = Field(default="suspend")
    button_action: str = Field(default="interactive")
    idle_ac: str = Field(default="nothing")
    idle_battery: str = Field(default="suspend")
    idle_timeout: int = Field(default=900, ge=0)
    automatic_power_saver: bool = Field(default=True)
    automatic_suspend: bool = Field(default=True)


class LocaleSchema(BaseModel):
    """Schema for locale, keyboard and timezone."""

    model_config = ConfigDict(extra="forbid")

    locale: str = Field(default="en_US.UTF-8")
    keyboard_layout: str = Field(default="us")
    timezone: str = Field(default="America/Denver")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if not v or v.startswith("/") or ".." in v.split("/"):
            raise ValueError(f"invalid timezone: '{v}'")
        return v


class InstallSchema(BaseModel):
    """Schema for the unattended installation target.

    Attributes:
        strategy: Partitioning strategy.
        disk: Target disk or partition (e.g. /dev/sda5, /dev/nvme0n1).
        swap: Optional swap partition.
        confirm_entire_disk: Required to erase a whole disk.
        packages: Extra packages installed by the Ubuntu installer.
    """

    model_config = ConfigDict(extra="forbid")

    strategy: PartitionStrategy = Field(default=PartitionStrategy.AUTO_DETECT)
    disk: str = Field(default="/dev/sda5")
    swap: str | None = Field(default=None)
    confirm_entire_disk: bool = Field(default=False)
    packages: list[str] = Field(
        default_factory=lambda: ["openssh-server", "curl", "wget", "git"]
    )

    @field_validator("disk", "swap")
    @classmethod
    def validate_device(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("/dev/"):
            raise ValueError(f"device path must start with /dev/, got '{v}'")
        return v


class VaraSchema(BaseModel):
    """Schema for VARA modem licenses."""

    model_config = ConfigDict(extra="forbid")

    fm_callsign: str | None = Field(default=None)
    fm_license_key: str | None = Field(default=None)
    hf_callsign: str | None = Field(default=None)
    hf_license_key: str | None = Field(default=None)

    @property
    def has_licenses(self) -> bool:
        return bool(self.fm_license_key or self.hf_license_key)


class StationSchema(BaseModel):
    """Complete station configuration.

    Attributes:
        callsign: Amateur radio callsign.
        machine_name: Hostname override (defaults to ETC-<CALLSIGN>).
        grid_square: Maidenhead locator.
        user: Primary user account.
        networks: Wi-Fi networks keyed by identifier.
        desktop: GNOME desktop defaults.
        power: Power management defaults.
        locale: Locale, keyboard and timezone.
        install: Unattended installation target.
        vara: Optional VARA licenses.
        additional_packages: Packages installed into the image with apt.
        installer_env: Variables exported to the upstream installer.
        backup_paths: Home-relative paths captured by rolling backups.
    """

    model_config = ConfigDict(extra="forbid")

    callsign: str = Field(default=DEFAULT_CALLSIGN)
    machine_name: str | None = Field(default=None)
    grid_square: str | None = Field(default=None)
    user: UserSchema = Field(default_factory=UserSchema)
    networks: dict[str, WifiNetworkSchema] = Field(default_factory=dict)
    desktop: DesktopSchema = Field(default_factory=DesktopSchema)
    power: PowerSchema = Field(default_factory=PowerSchema)
    locale: LocaleSchema = Field(default_factory=LocaleSchema)
    install: InstallSchema = Field(default_factory=InstallSchema)
    vara: VaraSchema = Field(default_factory=VaraSchema)
    additional_packages: list[str] = Field(default_factory=list)
    installer_env: dict[str, str] = Field(default_factory=dict)
    backup_paths: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BACKUP_PATHS)
    )

    @field_validator("callsign")
    @classmethod
    def validate_callsign(cls, v: str) -> str:
        """Validate and upper-case the callsign."""
        if not CALLSIGN_PATTERN.match(v):
            raise ValueError(f"invalid callsign: '{v}'")
        return _reject_template(v.upper(), "callsign")

    @field_validator("machine_name")
    @classmethod
    def validate_machine_name(cls, v: str | None) -> str | None:
        if v is not None and not re.match(r"^[A-Za-z0-9][A-Za-z0-9-]{0,62}$", v):
            raise ValueError(f"invalid machine_name: '{v}'")
        return v

    @field_validator("networks")
    @classmethod
    def validate_network_ids(
        cls, v: dict[str, WifiNetworkSchema]
    ) -> dict[str, WifiNetworkSchema]:
        for identifier in v:
            if not NETWORK_ID_PATTERN.match(identifier):
                raise ValueError(
                    f"network identifier must match {NETWORK_ID_PATTERN.pattern}, "
                    f"got '{identifier}'"
                )
        return v

    @field_validator("backup_paths")
    @classmethod
    def validate_backup_paths(cls, v: list[str]) -> list[str]:
        for path in v:
            if path.startswith("/") or ".." in path.split("/"):
                raise ValueError(f"backup path must be home-relative: '{path}'")
        return v

    @property
    def hostname(self) -> str:
        """Hostname derived from the callsign unless overridden."""
        return self.machine_name or f"ETC-{self.callsign}"

    @property
    def username(self) -> str:
        """Login name, defaulting to the lowercase callsign."""
        if self.user.username:
            return self.user.username
        return re.sub(r"[^a-z0-9_-]", "", self.callsign.lower())


__all__ = [
    "DEFAULT_BACKUP_PATHS",
    "DEFAULT_CALLSIGN",
    "DesktopSchema",
    "InstallSchema",
    "LocaleSchema",
    "PowerSchema",
    "StationSchema",
    "UserSchema",
    "VaraSchema",
    "WifiNetworkSchema",
]
