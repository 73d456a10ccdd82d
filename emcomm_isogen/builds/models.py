"""Build history ORM models.

This module defines the BuildRecord and UnitRecord models that persist
every build run together with the ordered outcome of each stage and
customization unit.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from emcomm_isogen.db import Base
from emcomm_isogen.types import BuildStatus


class BuildRecord(Base):
    """ORM model for build execution records.

    Attributes:
        id: Primary key.
        build_id: Timestamp identifier shared with the log and manifest files.
        status: Build status (pending, running, succeeded, failed, cancelled).
        release_tag: Installer release used.
        requested_at: Timestamp when the record was created.
        started_at: Timestamp when the build started executing.
        finished_at: Timestamp when the build finished.
        versions: JSON mapping of recorded versions.
        restore_attempts: JSON list of backup restore attempts.
        output_path: Produced ISO, on success.
        log_path: Build log file.
        manifest_path: Manifest JSON file.
        error_type: Code of the error that ended the build.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    release_tag: Mapped[str | None] = mapped_column(String(100), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    versions: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    restore_attempts: Mapped[list[dict[str, object]] | None] = mapped_column(
        JSON, nullable=True
    )

    # Paths
    output_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    manifest_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    units: Mapped[list["UnitRecord"]] = relationship(
        "UnitRecord",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="UnitRecord.sequence",
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, build_id='{self.build_id}', "
            f"status='{self.status}')>"
        )

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class UnitRecord(Base):
    """ORM model for one recorded stage or customization unit execution.

    Attributes:
        id: Primary key.
        build_record_id: Foreign key to BuildRecord.
        sequence: Position in the build's manifest.
        kind: "stage" or "unit".
        name: Stage or unit name.
        stage: Unit stage label, for units.
        policy: Unit failure policy, for units.
        outcome: applied, failed or skipped.
        message: Failure or skip reason.
        started_at: Execution start.
        duration: Execution time in seconds.
    """

    __tablename__ = "unit_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    policy: Mapped[str | None] = mapped_column(String(20), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    build: Mapped["BuildRecord"] = relationship("BuildRecord", back_populates="units")

    __table_args__ = (Index("ix_unit_records_build_sequence", "build_record_id", "sequence"),)

    def __repr__(self) -> str:
        """Return string representation of UnitRecord."""
        return (
            f"<UnitRecord(build_record_id={self.build_record_id}, "
            f"sequence={self.sequence}, name='{self.name}', outcome='{self.outcome}')>"
        )


__all__ = ["BuildRecord", "UnitRecord"]
