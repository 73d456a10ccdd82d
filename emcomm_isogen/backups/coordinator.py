"""Backup capture and restore.

This module handles:
- Capturing a rolling backup of the previous station's home directory state
- Manual creation of golden-master backup sets
- Listing backup sets and computing restore priority
- Validating, staging and restoring archives into the image's /etc/skel

Golden masters are only ever created by the operator. A build captures a
fresh rolling set before it starts, then restores golden first and rolling
second so that rolling contents win where both carry the same path.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tarfile
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from emcomm_isogen.builds.manifest import BuildManifest
from emcomm_isogen.errors import IsogenError
from emcomm_isogen.types import BackupKind, UnitOutcome

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
LAST_GOOD_FILE = "last-good.json"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Archives produced by et-user-backup on a running station
LEGACY_GOLDEN_GLOB = "etc-user-backup-*.tar.gz"

ARCHIVE_NAME_PATTERN = re.compile(
    r"^(?P<kind>golden-master|rolling)-(?P<stamp>\d{8}_\d{6})\.tar\.gz$"
)


@dataclass(frozen=True)
class BackupSet:
    """A backup archive of home-relative paths.

    Attributes:
        kind: golden-master or rolling.
        archive_path: The .tar.gz archive.
        paths: Home-relative paths captured, when known.
        captured_at: Capture time.
    """

    kind: BackupKind
    archive_path: Path
    paths: tuple[str, ...] = ()
    captured_at: datetime | None = None

    @property
    def name(self) -> str:
        return self.archive_path.name


@dataclass
class RestoreReport:
    """Outcome of restoring one kind of backup.

    Attributes:
        kind: Kind restored.
        restored: The set that was restored, if any.
        attempts: (set, outcome, message) for every set tried, in order.
    """

    kind: BackupKind
    restored: BackupSet | None = None
    attempts: list[tuple[BackupSet, UnitOutcome, str | None]] = field(
        default_factory=list
    )

    @property
    def ok(self) -> bool:
        return self.restored is not None


def archive_name(kind: BackupKind, captured_at: datetime) -> str:
    return f"{kind.value}-{captured_at.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def _set_from_path(path: Path) -> BackupSet | None:
    match = ARCHIVE_NAME_PATTERN.match(path.name)
    if match:
        captured_at = datetime.strptime(match["stamp"], TIMESTAMP_FORMAT)
        return BackupSet(BackupKind(match["kind"]), path, captured_at=captured_at)
    if path.match(LEGACY_GOLDEN_GLOB):
        captured_at = datetime.fromtimestamp(path.stat().st_mtime)
        return BackupSet(BackupKind.GOLDEN_MASTER, path, captured_at=captured_at)
    return None


def _write_archive(
    source_root: Path,
    paths: Sequence[str],
    backups_dir: Path,
    kind: BackupKind,
    now: datetime | None,
) -> BackupSet | None:
    existing = [p for p in paths if (source_root / p).exists()]
    if not existing:
        return None

    captured_at = now or datetime.now()
    backups_dir.mkdir(parents=True, exist_ok=True)
    archive = backups_dir / archive_name(kind, captured_at)
    partial = archive.with_name(archive.name + ".part")
    try:
        with tarfile.open(partial, "w:gz") as tar:
            for rel in existing:
                tar.add(source_root / rel, arcname=rel)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    os.replace(partial, archive)
    logger.info("Captured %s backup %s (%s)", kind.value, archive.name, ", ".join(existing))
    return BackupSet(kind, archive, tuple(existing), captured_at)


def capture_rolling(
    previous_state_root: Path | None,
    paths: Sequence[str],
    backups_dir: Path,
    now: datetime | None = None,
) -> BackupSet | None:
    """Capture a rolling backup of the previous station state.

    Args:
        previous_state_root: Home directory of the previous installation.
        paths: Home-relative paths to capture.
        backups_dir: Directory holding backup archives.
        now: Capture time override.

    Returns:
        The new BackupSet, or None when none of the paths exist.
    """
    if previous_state_root is None or not previous_state_root.is_dir():
        logger.info("No previous station state to capture")
        return None
    backup = _write_archive(previous_state_root, paths, backups_dir, BackupKind.ROLLING, now)
    if backup is None:
        logger.info("No backup paths exist under %s, skipping capture", previous_state_root)
    return backup


def create_golden_master(
    source_root: Path,
    paths: Sequence[str],
    backups_dir: Path,
    now: datetime | None = None,
) -> BackupSet:
    """Create a golden-master backup set. Operator action only.

    Raises:
        IsogenError: If none of the paths exist under source_root.
    """
    backup = _write_archive(source_root, paths, backups_dir, BackupKind.GOLDEN_MASTER, now)
    if backup is None:
        raise IsogenError(
            f"None of {', '.join(paths)} exist under {source_root}",
            code="nothing_to_backup",
        )
    return backup


def list_sets(
    backups_dir: Path,
    kind: BackupKind | None = None,
    legacy_dir: Path | None = None,
) -> list[BackupSet]:
    """List backup sets, newest first.

    Args:
        backups_dir: Directory holding backup archives.
        kind: Restrict to one kind.
        legacy_dir: Directory searched for etc-user-backup archives, which
            count as golden masters.
    """
    candidates: list[Path] = []
    if backups_dir.is_dir():
        candidates.extend(backups_dir.glob(f"*{ARCHIVE_SUFFIX}"))
    if legacy_dir is not None and legacy_dir.is_dir():
        candidates.extend(legacy_dir.glob(LEGACY_GOLDEN_GLOB))

    sets = [s for s in (_set_from_path(p) for p in candidates) if s is not None]
    if kind is not None:
        sets = [s for s in sets if s.kind == kind]
    return sorted(
        sets,
        key=lambda s: (s.captured_at or datetime.min, s.name),
        reverse=True,
    )


def read_last_good(backups_dir: Path) -> BackupSet | None:
    """Return the last rolling set that restored successfully, if still present."""
    marker = backups_dir / LAST_GOOD_FILE
    if not marker.is_file():
        return None
    try:
        data = json.loads(marker.read_text(encoding="utf-8"))
        archive = backups_dir / data["archive"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning("Ignoring unreadable %s: %s", marker, e)
        return None
    if not archive.is_file():
        logger.warning("Last known good backup %s no longer exists", archive.name)
        return None
    return _set_from_path(archive) or BackupSet(BackupKind.ROLLING, archive)


def write_last_good(backups_dir: Path, backup: BackupSet) -> Path:
    marker = backups_dir / LAST_GOOD_FILE
    marker.write_text(
        json.dumps(
            {
                "archive": backup.name,
                "restored_at": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )
        + "\n",
        encoding="utf-8",
    )
    return marker


def rolling_priority(backups_dir: Path, fresh: BackupSet | None) -> list[BackupSet]:
    """Rolling sets in restore order: the fresh capture, then the last known good."""
    ordered: list[BackupSet] = []
    if fresh is not None:
        ordered.append(fresh)
    last_good = read_last_good(backups_dir)
    if last_good is not None and (fresh is None or last_good.archive_path != fresh.archive_path):
        ordered.append(last_good)
    return ordered


def golden_priority(backups_dir: Path, legacy_dir: Path | None = None) -> list[BackupSet]:
    """Golden-master sets in restore order, newest first."""
    return list_sets(backups_dir, BackupKind.GOLDEN_MASTER, legacy_dir)


def validate_archive(archive: Path) -> list[str]:
    """Check that an archive is readable and holds only safe members.

    Returns:
        Member names.

    Raises:
        ValueError: On unsafe members.
        tarfile.TarError, OSError: If the archive is unreadable.
    """
    with tarfile.open(archive, "r:gz") as tar:
        members = tar.getmembers()
    names: list[str] = []
    for member in members:
        path = PurePosixPath(member.name)
        if path.is_absolute() or ".." in path.parts:
            raise ValueError(f"unsafe member path {member.name}")
        if not (member.isfile() or member.isdir() or member.issym()):
            raise ValueError(f"unsupported member type for {member.name}")
        if member.issym():
            target = PurePosixPath(member.linkname)
            if target.is_absolute() or ".." in target.parts:
                raise ValueError(f"unsafe symlink {member.name} -> {member.linkname}")
        names.append(member.name)
    return names


def _restore_one(backup: BackupSet, target: Path) -> int:
    names = validate_archive(backup.archive_path)
    with tempfile.TemporaryDirectory(prefix="isogen-restore-") as staging:
        with tarfile.open(backup.archive_path, "r:gz") as tar:
            tar.extractall(staging, filter="data")
        target.mkdir(parents=True, exist_ok=True)
        shutil.copytree(staging, target, symlinks=True, dirs_exist_ok=True)
    return len(names)


def restore(
    target: Path,
    sets: Iterable[BackupSet],
    kind: BackupKind,
    manifest: BuildManifest | None = None,
    backups_dir: Path | None = None,
) -> RestoreReport:
    """Restore the first good set, trying sets in priority order.

    Missing and corrupt archives are logged and recorded, never fatal. Files
    already under target are overwritten.

    Args:
        target: Directory to restore into (the image's /etc/skel).
        sets: Candidate sets in priority order.
        kind: Kind being restored.
        manifest: Receives one restore attempt per set tried.
        backups_dir: Where last-good.json lives; updated on a rolling restore.

    Returns:
        RestoreReport.
    """
    report = RestoreReport(kind=kind)
    for backup in sets:
        if not backup.archive_path.is_file():
            message = "archive missing"
            outcome = UnitOutcome.SKIPPED
        else:
            try:
                count = _restore_one(backup, target)
            except (tarfile.TarError, OSError, ValueError, EOFError) as e:
                message = f"corrupt archive: {e}"
                outcome = UnitOutcome.FAILED
            else:
                message = f"{count} entries"
                outcome = UnitOutcome.APPLIED

        report.attempts.append((backup, outcome, message))
        if manifest is not None:
            manifest.record_restore(kind.value, backup.archive_path, outcome, message)

        if outcome == UnitOutcome.APPLIED:
            logger.info("Restored %s backup %s (%s)", kind.value, backup.name, message)
            report.restored = backup
            if kind == BackupKind.ROLLING and backups_dir is not None:
                write_last_good(backups_dir, backup)
            break
        logger.warning("Could not restore %s backup %s: %s", kind.value, backup.name, message)

    if report.restored is None:
        logger.info("No %s backup restored", kind.value)
        if manifest is not None and not report.attempts:
            manifest.record_restore(kind.value, None, UnitOutcome.SKIPPED, "no backup sets")
    return report


__all__ = [
    "LAST_GOOD_FILE",
    "BackupSet",
    "RestoreReport",
    "archive_name",
    "capture_rolling",
    "create_golden_master",
    "golden_priority",
    "list_sets",
    "read_last_good",
    "restore",
    "rolling_priority",
    "validate_archive",
    "write_last_good",
]
