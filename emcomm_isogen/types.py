"""Shared type definitions for emcomm_isogen.

This module contains enums shared across subpackages
to avoid circular imports.
"""

from enum import Enum, IntEnum


class BuildStatus(str, Enum):
    """Status of a build run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FetchState(str, Enum):
    """State of a cached artifact."""

    CACHED = "cached"
    DOWNLOADED = "downloaded"
    VERIFIED = "verified"


class MountState(str, Enum):
    """Lifecycle state of an extracted image."""

    UNEXTRACTED = "unextracted"
    EXTRACTED = "extracted"
    CHROOT_BOUND = "chroot-bound"
    UNMOUNTING = "unmounting"
    UNMOUNTED = "unmounted"
    FAILED = "failed"


class UnitStage(IntEnum):
    """Stage of a customization unit.

    Lower stages always run before higher ones; within a stage,
    declaration order decides.
    """

    BASE_OVERLAY = 10
    BASELINE = 20
    GOLDEN_RESTORE = 30
    ROLLING_RESTORE = 40
    FINAL_CONFIG = 50
    FINALIZE = 60

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


class UnitPolicy(str, Enum):
    """Failure policy of a customization unit."""

    CORE = "core"
    DEFERRABLE = "deferrable"


class UnitOutcome(str, Enum):
    """Recorded outcome of a unit or pipeline stage."""

    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class BackupKind(str, Enum):
    """Kind of user-state backup set."""

    GOLDEN_MASTER = "golden-master"
    ROLLING = "rolling"


class PartitionStrategy(str, Enum):
    """Disk partitioning strategy of the unattended install."""

    EXISTING_PARTITION = "existing-partition"
    ENTIRE_DISK = "entire-disk"
    FREE_SPACE = "free-space"
    AUTO_DETECT = "auto-detect"


class ReleaseMode(str, Enum):
    """How the installer release is selected."""

    STABLE = "stable"
    LATEST = "latest"
    TAG = "tag"


__all__ = [
    "BackupKind",
    "BuildStatus",
    "FetchState",
    "MountState",
    "PartitionStrategy",
    "ReleaseMode",
    "UnitOutcome",
    "UnitPolicy",
    "UnitStage",
]
