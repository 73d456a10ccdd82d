"""Unattended install preseed generation."""

from emcomm_isogen.preseed.generator import (
    BOOT_PARAMS,
    PreseedOutput,
    PreseedProfile,
    generate,
    hash_password,
    parse_preseed,
    profile_from_station,
    write,
)

__all__ = [
    "BOOT_PARAMS",
    "PreseedOutput",
    "PreseedProfile",
    "generate",
    "hash_password",
    "parse_preseed",
    "profile_from_station",
    "write",
]
