"""Station configuration module.

This module handles:
- Typed station configuration (identity, user, networks, preferences)
- Loading from YAML/JSON
- One-time conversion of legacy secrets.env files
"""

from emcomm_isogen.station.io import (
    dump_station_yaml,
    load_secrets_env,
    load_station,
)
from emcomm_isogen.station.schema import (
    InstallSchema,
    StationSchema,
    UserSchema,
    WifiNetworkSchema,
)

__all__ = [
    "InstallSchema",
    "StationSchema",
    "UserSchema",
    "WifiNetworkSchema",
    "dump_station_yaml",
    "load_secrets_env",
    "load_station",
]
