"""Build manifest.

This module handles:
- Ordered recording of every pipeline stage and customization unit outcome
- Recording of backup restore attempts
- JSON serialization of the manifest next to the build log
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from emcomm_isogen.types import BuildStatus, UnitOutcome

logger = logging.getLogger(__name__)

KIND_STAGE = "stage"
KIND_UNIT = "unit"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ManifestEntry:
    """One recorded stage or unit execution."""

    sequence: int
    kind: str
    name: str
    outcome: UnitOutcome
    started_at: datetime
    duration: float = 0.0
    stage: str | None = None
    policy: str | None = None
    message: str | None = None


@dataclass
class RestoreAttempt:
    """One attempt to restore a backup set."""

    kind: str
    archive: str | None
    outcome: UnitOutcome
    message: str | None = None


@dataclass
class BuildManifest:
    """Ordered record of a build run.

    Attributes:
        build_id: Timestamp-based identifier, also used in file names.
        started_at: Build start time (UTC).
        status: Overall status.
        versions: Release tag, base image, tool version and similar facts.
        entries: Stage and unit executions in order.
        restore_attempts: Backup restore attempts in order.
        output_iso: Produced image, on success.
        error_code: Code of the error that ended the build, if any.
        error_message: Message of that error.
    """

    build_id: str
    started_at: datetime = field(default_factory=_now)
    status: BuildStatus = BuildStatus.PENDING
    versions: dict[str, str] = field(default_factory=dict)
    entries: list[ManifestEntry] = field(default_factory=list)
    restore_attempts: list[RestoreAttempt] = field(default_factory=list)
    output_iso: str | None = None
    finished_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def new(cls, now: datetime | None = None) -> BuildManifest:
        now = now or datetime.now()
        return cls(build_id=f"{now:%Y%m%d_%H%M%S}")

    def record(
        self,
        kind: str,
        name: str,
        outcome: UnitOutcome,
        started_at: datetime | None = None,
        duration: float = 0.0,
        stage: str | None = None,
        policy: str | None = None,
        message: str | None = None,
    ) -> ManifestEntry:
        """Append an entry and return it."""
        entry = ManifestEntry(
            sequence=len(self.entries) + 1,
            kind=kind,
            name=name,
            outcome=outcome,
            started_at=started_at or _now(),
            duration=duration,
            stage=stage,
            policy=policy,
            message=message,
        )
        self.entries.append(entry)
        return entry

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Record a pipeline stage as applied, or as failed if the block raises."""
        started_at = _now()
        start = time.monotonic()
        logger.info("Stage: %s", name)
        try:
            yield
        except BaseException as e:
            self.record(
                KIND_STAGE,
                name,
                UnitOutcome.FAILED,
                started_at=started_at,
                duration=time.monotonic() - start,
                message=str(e) or type(e).__name__,
            )
            raise
        self.record(
            KIND_STAGE,
            name,
            UnitOutcome.APPLIED,
            started_at=started_at,
            duration=time.monotonic() - start,
        )

    def skip_stage(self, name: str, reason: str) -> ManifestEntry:
        logger.info("Stage skipped: %s (%s)", name, reason)
        return self.record(KIND_STAGE, name, UnitOutcome.SKIPPED, message=reason)

    def record_restore(
        self,
        kind: str,
        archive: Path | None,
        outcome: UnitOutcome,
        message: str | None = None,
    ) -> RestoreAttempt:
        attempt = RestoreAttempt(
            kind=kind,
            archive=str(archive) if archive else None,
            outcome=outcome,
            message=message,
        )
        self.restore_attempts.append(attempt)
        return attempt

    def units(self) -> list[ManifestEntry]:
        return [e for e in self.entries if e.kind == KIND_UNIT]

    def entry_for(self, name: str) -> ManifestEntry | None:
        """Return the last entry recorded under a name."""
        for entry in reversed(self.entries):
            if entry.name == name:
                return entry
        return None

    def finish(
        self,
        status: BuildStatus,
        error: BaseException | None = None,
        output_iso: Path | None = None,
    ) -> None:
        self.status = status
        self.finished_at = _now()
        if output_iso is not None:
            self.output_iso = str(output_iso)
        if error is not None:
            self.error_code = getattr(error, "code", type(error).__name__)
            self.error_message = str(error)

    def to_dict(self) -> dict[str, Any]:
        return json.loads(json.dumps(asdict(self), default=_json_default))

    def write_json(self, path: Path) -> Path:
        """Write the manifest as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        return path


def _json_default(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


__all__ = [
    "KIND_STAGE",
    "KIND_UNIT",
    "BuildManifest",
    "ManifestEntry",
    "RestoreAttempt",
]
