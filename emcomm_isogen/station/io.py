"""Station configuration loading.

This module provides helpers for loading the station configuration from
YAML/JSON files, and for converting a legacy ``secrets.env`` file into
the typed schema once, at load time.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from emcomm_isogen.station.schema import TEMPLATE_PREFIX, StationSchema

logger = logging.getLogger(__name__)

WIFI_KEY_PATTERN = re.compile(r"^WIFI_(SSID|PASSWORD|AUTOCONNECT)_([A-Za-z0-9_]+)$")

# Legacy variable -> (section, field); section None means top level
LEGACY_FIELDS: dict[str, tuple[str | None, str]] = {
    "CALLSIGN": (None, "callsign"),
    "MACHINE_NAME": (None, "machine_name"),
    "GRID_SQUARE": (None, "grid_square"),
    "USER_FULLNAME": ("user", "fullname"),
    "USER_USERNAME": ("user", "username"),
    "USER_PASSWORD": ("user", "password"),
    "USER_EMAIL": ("user", "email"),
    "ENABLE_AUTOLOGIN": ("user", "autologin"),
    "DESKTOP_COLOR_SCHEME": ("desktop", "color_scheme"),
    "DESKTOP_SCALING_FACTOR": ("desktop", "scaling_factor"),
    "DISABLE_ACCESSIBILITY": ("desktop", "disable_accessibility"),
    "AUTOMATIC_SCREEN_BRIGHTNESS": ("desktop", "automatic_brightness"),
    "DIM_SCREEN": ("desktop", "dim_screen"),
    "SCREEN_BLANK_TIMEOUT": ("desktop", "screen_blank_timeout"),
    "POWER_MODE": ("power", "mode"),
    "POWER_LID_CLOSE_AC": ("power", "lid_close_ac"),
    "POWER_LID_CLOSE_BATTERY": ("power", "lid_close_battery"),
    "POWER_BUTTON_ACTION": ("power", "button_action"),
    "POWER_IDLE_AC": ("power", "idle_ac"),
    "POWER_IDLE_BATTERY": ("power", "idle_battery"),
    "POWER_IDLE_TIMEOUT": ("power", "idle_timeout"),
    "AUTOMATIC_POWER_SAVER": ("power", "automatic_power_saver"),
    "AUTOMATIC_SUSPEND": ("power", "automatic_suspend"),
    "LOCALE": ("locale", "locale"),
    "KEYBOARD_LAYOUT": ("locale", "keyboard_layout"),
    "TIMEZONE": ("locale", "timezone"),
    "INSTALL_DISK": ("install", "disk"),
    "INSTALL_SWAP": ("install", "swap"),
    "CONFIRM_ENTIRE_DISK": ("install", "confirm_entire_disk"),
    "VARA_FM_CALLSIGN": ("vara", "fm_callsign"),
    "VARA_FM_LICENSE_KEY": ("vara", "fm_license_key"),
    "VARA_HF_CALLSIGN": ("vara", "hf_callsign"),
    "VARA_HF_LICENSE_KEY": ("vara", "hf_license_key"),
}

# Passed through to the upstream installer unchanged
LEGACY_INSTALLER_ENV = ("ET_EXPERT", "ET_MAP_REGION", "ET_CALLSIGN", "ET_AUDIO_DEVICE")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _legacy_bool(value: str) -> bool:
    return value.strip().lower() in ("yes", "true", "1", "on")


def _is_template(value: str) -> bool:
    return not value or value.upper().startswith(TEMPLATE_PREFIX)


def secrets_env_to_data(values: dict[str, str | None]) -> dict[str, Any]:
    """Convert legacy secrets.env variables into station schema data.

    ``WIFI_SSID_<ID>``/``WIFI_PASSWORD_<ID>``/``WIFI_AUTOCONNECT_<ID>`` are
    grouped into the ``networks`` mapping keyed by ``<ID>``. Networks whose
    SSID is empty or still a ``YOUR_*`` template are skipped, as are
    networks without a password.

    Args:
        values: Variables as parsed by python-dotenv.

    Returns:
        Dictionary suitable for StationSchema.model_validate.
    """
    data: dict[str, Any] = {}
    wifi: dict[str, dict[str, str]] = {}
    installer_env: dict[str, str] = {}

    for key, raw in values.items():
        if raw is None:
            continue
        value = raw.strip()

        match = WIFI_KEY_PATTERN.match(key)
        if match:
            kind, identifier = match.groups()
            wifi.setdefault(identifier, {})[kind] = value
            continue

        if key in LEGACY_INSTALLER_ENV:
            installer_env[key] = value
            continue

        if key == "ADDITIONAL_PACKAGES":
            data["additional_packages"] = value.split()
            continue

        target = LEGACY_FIELDS.get(key)
        if target is None or value == "":
            continue
        section, field = target
        converted: Any = value
        if field in (
            "autologin",
            "disable_accessibility",
            "automatic_brightness",
            "dim_screen",
            "automatic_power_saver",
            "automatic_suspend",
            "confirm_entire_disk",
        ):
            converted = _legacy_bool(value)
        if section is None:
            data[field] = converted
        else:
            data.setdefault(section, {})[field] = converted

    networks: dict[str, dict[str, Any]] = {}
    for identifier, entry in sorted(wifi.items()):
        ssid = entry.get("SSID", "")
        password = entry.get("PASSWORD", "")
        if _is_template(ssid):
            logger.debug("Skipping template Wi-Fi entry %s", identifier)
            continue
        if not password:
            logger.warning("No password for Wi-Fi network %s, skipping", identifier)
            continue
        networks[identifier] = {
            "ssid": ssid,
            "password": password,
            "autoconnect": entry.get("AUTOCONNECT", "yes").lower()
            not in ("no", "false"),
        }
    if networks:
        data["networks"] = networks
    if installer_env:
        data["installer_env"] = installer_env
    return data


def load_secrets_env(path: Path) -> StationSchema:
    """Load a legacy secrets.env file into the typed schema.

    Args:
        path: Path to the secrets.env file.

    Returns:
        Validated StationSchema instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If converted data does not match schema.
    """
    if not path.exists():
        raise FileNotFoundError(path)
    values = dotenv_values(path)
    return StationSchema.model_validate(secrets_env_to_data(values))


def parse_station_data(data: dict[str, Any]) -> StationSchema:
    """Parse and validate station data using the schema.

    Args:
        data: Dictionary containing station configuration.

    Returns:
        Validated StationSchema instance.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return StationSchema.model_validate(data)


def load_station(path: Path) -> StationSchema:
    """Load and validate a station configuration file.

    File format is determined by name: ``.yaml``/``.yml`` for YAML,
    ``.json`` for JSON and ``*.env`` for the legacy variable file.

    Args:
        path: Path to the configuration file.

    Returns:
        Validated StationSchema instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return parse_station_data(load_yaml(path))
    if suffix == ".json":
        return parse_station_data(load_json(path))
    if suffix == ".env" or path.name.endswith(".env"):
        return load_secrets_env(path)
    raise ValueError(
        f"Unsupported station config format: {path.suffix}. "
        "Use .yaml, .yml, .json or .env"
    )


def dump_station_yaml(station: StationSchema) -> str:
    """Render a station configuration as YAML.

    Used to migrate a legacy secrets.env once.

    Args:
        station: Validated station configuration.

    Returns:
        YAML document.
    """
    data = station.model_dump(mode="json", exclude_none=True)
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


__all__ = [
    "dump_station_yaml",
    "load_json",
    "load_secrets_env",
    "load_station",
    "load_yaml",
    "parse_station_data",
    "secrets_env_to_data",
]
