"""Station backup capture and restore."""

from emcomm_isogen.backups.coordinator import (
    BackupSet,
    RestoreReport,
    capture_rolling,
    create_golden_master,
    golden_priority,
    list_sets,
    restore,
    rolling_priority,
)

__all__ = [
    "BackupSet",
    "RestoreReport",
    "capture_rolling",
    "create_golden_master",
    "golden_priority",
    "list_sets",
    "restore",
    "rolling_priority",
]
