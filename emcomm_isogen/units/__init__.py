"""Customization units module.

This module handles:
- The customization unit registry and its ordering checks
- The shipped units and their default order
"""

from emcomm_isogen.units.defaults import default_registry, default_units
from emcomm_isogen.units.registry import (
    CustomizationUnit,
    Registry,
    UnitResult,
    UnitSkipped,
)

__all__ = [
    "CustomizationUnit",
    "Registry",
    "UnitResult",
    "UnitSkipped",
    "default_registry",
    "default_units",
]
