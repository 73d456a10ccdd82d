"""NetworkManager Wi-Fi profiles.

This module handles:
- Rendering one keyfile (.nmconnection) per configured network identifier
- GKeyFile string escaping so SSIDs and passphrases round-trip exactly
- Writing profiles with mode 0600 and verifying the mode afterwards
- Parsing keyfiles back into sections
"""

from __future__ import annotations

import logging
import os
import stat
import uuid
from collections.abc import Mapping
from pathlib import Path

from emcomm_isogen.errors import NetworkProfileError
from emcomm_isogen.station.schema import WifiNetworkSchema

logger = logging.getLogger(__name__)

CONNECTIONS_DIR = "etc/NetworkManager/system-connections"
PROFILE_SUFFIX = ".nmconnection"
PROFILE_MODE = 0o600

UUID_NAMESPACE = uuid.UUID("6f1f7a52-3c1e-4f4e-9b7e-6a4c1e0d2b11")

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\t": "\\t", "\r": "\\r"}
_UNESCAPES = {"\\": "\\", "n": "\n", "t": "\t", "r": "\r", "s": " "}


def profile_uuid(identifier: str) -> str:
    """Stable connection UUID for a network identifier."""
    return str(uuid.uuid5(UUID_NAMESPACE, identifier))


def escape_value(value: str) -> str:
    """Escape a string the way GKeyFile writes it.

    Leading and trailing spaces are written as ``\\s`` so they survive
    parsers that strip whitespace around values.
    """
    escaped = "".join(_ESCAPES.get(ch, ch) for ch in value)
    leading = len(escaped) - len(escaped.lstrip(" "))
    if leading:
        escaped = "\\s" * leading + escaped[leading:]
    stripped = escaped.rstrip(" ")
    trailing = len(escaped) - len(stripped)
    if trailing:
        escaped = stripped + "\\s" * trailing
    return escaped


def unescape_value(value: str) -> str:
    """Reverse escape_value.

    Raises:
        ValueError: On an invalid escape sequence.
    """
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt is None or nxt not in _UNESCAPES:
            raise ValueError(f"invalid escape sequence in {value!r}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


def render_profile(identifier: str, network: WifiNetworkSchema) -> str:
    """Render a WPA-PSK keyfile for one network."""
    ssid = escape_value(network.ssid)
    sections = [
        (
            "connection",
            [
                ("id", ssid),
                ("uuid", profile_uuid(identifier)),
                ("type", "wifi"),
                ("autoconnect", "true" if network.autoconnect else "false"),
                ("permissions", ""),
            ],
        ),
        ("wifi", [("mode", "infrastructure"), ("ssid", ssid)]),
        (
            "wifi-security",
            [("key-mgmt", "wpa-psk"), ("psk", escape_value(network.password))],
        ),
        ("ipv4", [("method", "auto")]),
        ("ipv6", [("addr-gen-mode", "default"), ("method", "auto")]),
    ]
    blocks = []
    for name, entries in sections:
        lines = [f"[{name}]"] + [f"{key}={value}" for key, value in entries]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def parse_keyfile(text: str) -> dict[str, dict[str, str]]:
    """Parse a keyfile into {section: {key: unescaped value}}."""
    sections: dict[str, dict[str, str]] = {}
    current: dict[str, str] | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            current = sections.setdefault(line[1:-1], {})
            continue
        if current is None or "=" not in raw:
            raise ValueError(f"malformed keyfile line: {raw!r}")
        key, _, value = raw.lstrip().partition("=")
        current[key.strip()] = unescape_value(value.lstrip(" "))
    return sections


def _write_private(path: Path, content: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PROFILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(path, PROFILE_MODE)


def write_profiles(
    root: Path, networks: Mapping[str, WifiNetworkSchema]
) -> list[Path]:
    """Write one profile per network under the image root.

    Args:
        root: Image root filesystem.
        networks: Networks keyed by identifier.

    Returns:
        Written profile paths, in identifier order.

    Raises:
        NetworkProfileError: If a profile cannot be written or its mode is not 0600.
    """
    directory = root / CONNECTIONS_DIR
    directory.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for identifier in sorted(networks):
        path = directory / f"{identifier}{PROFILE_SUFFIX}"
        if path.is_symlink():
            path.unlink()
        try:
            _write_private(path, render_profile(identifier, networks[identifier]))
        except OSError as e:
            raise NetworkProfileError(
                f"Failed to write network profile {path.name}: {e}", code="write_failed"
            ) from e

        mode = stat.S_IMODE(path.stat().st_mode)
        if mode != PROFILE_MODE:
            raise NetworkProfileError(
                f"Network profile {path.name} has mode {mode:o}, expected 600",
                code="bad_mode",
            )
        logger.info("Wi-Fi network configured: %s", networks[identifier].ssid)
        written.append(path)
    return written


__all__ = [
    "CONNECTIONS_DIR",
    "PROFILE_MODE",
    "escape_value",
    "parse_keyfile",
    "profile_uuid",
    "render_profile",
    "unescape_value",
    "write_profiles",
]
