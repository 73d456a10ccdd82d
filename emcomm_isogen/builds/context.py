"""Build context passed through every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from emcomm_isogen.builds.manifest import BuildManifest
from emcomm_isogen.config import Settings
from emcomm_isogen.errors import MountError
from emcomm_isogen.station.schema import StationSchema

if TYPE_CHECKING:
    from emcomm_isogen.artifacts.cache import Artifact
    from emcomm_isogen.artifacts.releases import ReleaseInfo
    from emcomm_isogen.backups.coordinator import BackupSet
    from emcomm_isogen.image.mount import ImageContext


@dataclass
class BuildContext:
    """Everything a stage or customization unit may read.

    Attributes:
        settings: Effective settings.
        station: Validated station configuration.
        manifest: Build manifest being recorded.
        image: Live image context, once extracted.
        release: Resolved installer release.
        log_path: Build log file.
        minimal: Skip embedding cache files into the image.
        addons_overlay: Unpacked add-ons overlay directory, if requested.
        artifacts: Fetched artifacts by logical name.
        golden_sets: Golden-master backup sets in restore priority order.
        rolling_sets: Rolling backup sets in restore priority order.
        started_at: Build start time.
    """

    settings: Settings
    station: StationSchema
    manifest: BuildManifest
    image: ImageContext | None = None
    release: ReleaseInfo | None = None
    log_path: Path | None = None
    minimal: bool = False
    addons_overlay: Path | None = None
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    golden_sets: list[BackupSet] = field(default_factory=list)
    rolling_sets: list[BackupSet] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def root(self) -> Path:
        """Root filesystem tree of the live image."""
        if self.image is None:
            raise MountError("No image extracted", code="no_image")
        return self.image.squashfs_root

    @property
    def backups_dir(self) -> Path:
        return self.settings.cache_dir / "backups"


__all__ = ["BuildContext"]
