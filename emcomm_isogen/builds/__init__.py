"""Build orchestration module.

This module handles:
- The build context threaded through every pipeline stage
- The ordered build manifest
- Build history records
- Running the full customization pipeline
"""

from emcomm_isogen.builds.models import BuildRecord, UnitRecord

__all__ = ["BuildRecord", "UnitRecord"]

# Submodules are imported directly (emcomm_isogen.builds.service, etc.)
# to avoid circular imports
