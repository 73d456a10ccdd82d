"""Build service module.

This module provides the high-level build API:
- check_prerequisites(): required host tools and privileges
- run_build(): the full customization pipeline with guaranteed unwind
- Build history persistence and lookup

Pipeline order: static unit checks, release resolution, artifact fetch,
rolling capture, then under the work directory lock: extract, chroot
session (installer, units, preseed), leave chroot, unmount, repack.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from emcomm_isogen import __version__
from emcomm_isogen.artifacts.cache import ArtifactCache
from emcomm_isogen.artifacts.releases import (
    ReleaseInfo,
    ReleaseResolver,
    installer_descriptor,
)
from emcomm_isogen.artifacts.sources import (
    addons_descriptor,
    base_image_descriptor,
    unpack_addons,
)
from emcomm_isogen.backups.coordinator import (
    capture_rolling,
    golden_priority,
    rolling_priority,
)
from emcomm_isogen.builds.context import BuildContext
from emcomm_isogen.builds.manifest import BuildManifest
from emcomm_isogen.builds.models import BuildRecord, UnitRecord
from emcomm_isogen.db import get_session
from emcomm_isogen.errors import (
    BuildCancelled,
    IsogenError,
    MountError,
    PrerequisiteError,
)
from emcomm_isogen.image import mount, repack
from emcomm_isogen.installer import runner as installer
from emcomm_isogen.preseed import generator as preseed
from emcomm_isogen.types import BuildStatus, ReleaseMode
from emcomm_isogen.units.defaults import default_registry
from emcomm_isogen.units.registry import Registry

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = (
    "xorriso",
    "unsquashfs",
    "mksquashfs",
    "chroot",
    "mount",
    "umount",
    "openssl",
)

MANIFEST_SUFFIX = ".manifest.json"


class BuildNotFoundError(IsogenError):
    """Raised when a build record is not found."""

    def __init__(self, build_id: str, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}", code)
        self.build_id = build_id


@dataclass
class BuildRequest:
    """Operator choices for one build.

    Attributes:
        release_mode: stable, latest or tag.
        tag: Tag name for release_mode tag.
        minimal: Do not embed the cache into the image.
        keep_work: Keep the work directory; None uses the setting.
        addons: Overlay the community add-ons.
    """

    release_mode: ReleaseMode = ReleaseMode.STABLE
    tag: str | None = None
    minimal: bool = False
    keep_work: bool | None = None
    addons: bool = False


@dataclass
class BuildOutcome:
    manifest: BuildManifest
    output_iso: Path | None
    log_path: Path | None
    manifest_path: Path | None


def check_prerequisites(
    tools: Sequence[str] = REQUIRED_TOOLS, require_root: bool = True
) -> None:
    """Check host tools and privileges.

    Raises:
        PrerequisiteError: If a tool is missing or the process is not root.
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise PrerequisiteError(
            f"Missing required tools: {', '.join(missing)}", code="missing_tools"
        )
    if require_root and os.geteuid() != 0:
        raise PrerequisiteError(
            "Building an image requires root (bind mounts and chroot)",
            code="not_root",
        )


def manifest_path_for(build: BuildContext) -> Path:
    return build.settings.logs_dir / f"build_{build.manifest.build_id}{MANIFEST_SUFFIX}"


def persist_manifest(
    session: Session,
    manifest: BuildManifest,
    log_path: Path | None = None,
    manifest_path: Path | None = None,
) -> BuildRecord:
    """Insert or update the BuildRecord for a manifest, replacing its unit rows."""
    record = session.execute(
        select(BuildRecord).where(BuildRecord.build_id == manifest.build_id)
    ).scalar_one_or_none()
    if record is None:
        record = BuildRecord(build_id=manifest.build_id)
        session.add(record)

    record.status = manifest.status.value
    record.release_tag = manifest.versions.get("release_tag")
    record.started_at = manifest.started_at.replace(tzinfo=None)
    record.finished_at = (
        manifest.finished_at.replace(tzinfo=None) if manifest.finished_at else None
    )
    record.versions = dict(manifest.versions)
    record.restore_attempts = manifest.to_dict()["restore_attempts"]
    record.output_path = manifest.output_iso
    record.log_path = str(log_path) if log_path else None
    record.manifest_path = str(manifest_path) if manifest_path else None
    record.error_type = manifest.error_code
    record.error_message = manifest.error_message

    record.units = [
        UnitRecord(
            sequence=entry.sequence,
            kind=entry.kind,
            name=entry.name,
            stage=entry.stage,
            policy=entry.policy,
            outcome=entry.outcome.value,
            message=entry.message,
            started_at=entry.started_at.replace(tzinfo=None),
            duration=entry.duration,
        )
        for entry in manifest.entries
    ]
    session.flush()
    return record


def list_builds(
    session: Session, status: BuildStatus | None = None, limit: int = 20
) -> list[BuildRecord]:
    """List build records, newest first."""
    stmt = select(BuildRecord)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    stmt = stmt.order_by(BuildRecord.build_id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


def get_build(session: Session, build_id: str) -> BuildRecord:
    """Get a build record by its build id.

    Raises:
        BuildNotFoundError: If no record matches.
    """
    record = session.execute(
        select(BuildRecord).where(BuildRecord.build_id == build_id)
    ).scalar_one_or_none()
    if record is None:
        raise BuildNotFoundError(build_id)
    return record


def _fetch_artifacts(
    build: BuildContext,
    release: ReleaseInfo,
    request: BuildRequest,
    cache: ArtifactCache,
) -> None:
    settings = build.settings
    build.artifacts["base-image"] = cache.fetch(base_image_descriptor(settings))
    build.artifacts["installer"] = cache.fetch(installer_descriptor(release))

    if not request.addons:
        return
    if settings.addons_dir is not None:
        build.addons_overlay = settings.addons_dir
        return
    addons = cache.fetch(addons_descriptor(settings))
    build.artifacts["addons"] = addons
    build.addons_overlay = unpack_addons(addons, settings.cache_dir / "et-os-addons")


def _record_versions(build: BuildContext) -> None:
    release = build.release
    versions = build.manifest.versions
    versions["tool_version"] = __version__
    if release is not None:
        versions["release_tag"] = release.tag
        versions["release_version"] = release.version
        versions["release_date"] = release.date_version
    for name, artifact in build.artifacts.items():
        versions[f"{name}_file"] = artifact.cache_path.name
        versions[f"{name}_sha256"] = artifact.sha256


def _unwind(ctx: mount.ImageContext, mounts_file: Path) -> None:
    try:
        mount.unmount(ctx, mounts_file)
    except MountError as e:
        logger.error("Image unwind incomplete: %s", e)


def _run_pipeline(
    build: BuildContext,
    request: BuildRequest,
    registry: Registry,
    cache: ArtifactCache,
    resolver: ReleaseResolver,
    layout: dict[str, Any] | None,
    mounts_file: Path,
) -> Path:
    settings = build.settings
    manifest = build.manifest

    with manifest.stage("validate-units"):
        registry.validate()

    with manifest.stage("resolve-release"):
        release = resolver.resolve(request.release_mode, request.tag)
        build.release = release

    with manifest.stage("fetch-artifacts"):
        _fetch_artifacts(build, release, request, cache)
    _record_versions(build)

    with manifest.stage("capture-rolling"):
        fresh = capture_rolling(
            settings.previous_state_root, build.station.backup_paths, build.backups_dir
        )
        build.rolling_sets = rolling_priority(build.backups_dir, fresh)
        build.golden_sets = golden_priority(build.backups_dir, settings.cache_dir)

    work_dir = settings.work_dir
    keep_work = settings.keep_work if request.keep_work is None else request.keep_work
    with mount.workdir_lock(work_dir):
        failed = True
        try:
            with manifest.stage("extract"):
                build.image = mount.extract(
                    build.artifacts["base-image"].cache_path,
                    work_dir,
                    log_path=build.log_path,
                )
            ctx = build.image

            with ExitStack() as chroot:
                with manifest.stage("enter-chroot"):
                    chroot.enter_context(mount.chroot_session(ctx))
                with manifest.stage("installer"):
                    status = installer.run(
                        ctx,
                        build.artifacts["installer"].cache_path,
                        marker=settings.installer_marker,
                        env=build.station.installer_env,
                    )
                    for warning in status.warnings:
                        logger.warning(warning)
                registry.apply_all(build)
                with manifest.stage("preseed"):
                    profile = preseed.profile_from_station(build.station)
                    output = preseed.generate(profile, layout)
                    preseed.write(output, ctx)

            with manifest.stage("unmount"):
                mount.unmount(ctx, mounts_file)

            with manifest.stage("repack"):
                iso = repack.pack(
                    ctx,
                    settings.output_dir / release.output_filename,
                    release.volume_label,
                    {**manifest.versions, "build_id": manifest.build_id},
                    compression=settings.squashfs_compression,
                )
            failed = False
            return iso
        finally:
            if failed and build.image is not None:
                _unwind(build.image, mounts_file)
            # Only a directory this tool created carries the marker
            if not keep_work and mount.is_reusable(work_dir):
                try:
                    mount.clear_work_dir(work_dir)
                except MountError as e:
                    if not failed:
                        raise
                    logger.error("Work directory kept: %s", e)


def _save(
    build: BuildContext,
    session_factory: sessionmaker[Session] | None,
    strict: bool,
) -> Path | None:
    manifest_path: Path | None = None
    try:
        manifest_path = build.manifest.write_json(manifest_path_for(build))
        with get_session(session_factory) as session:
            persist_manifest(session, build.manifest, build.log_path, manifest_path)
    except (OSError, SQLAlchemyError) as e:
        if strict:
            raise
        logger.error("Failed to persist build %s: %s", build.manifest.build_id, e)
    return manifest_path


def run_build(
    build: BuildContext,
    request: BuildRequest | None = None,
    registry: Registry | None = None,
    cache: ArtifactCache | None = None,
    resolver: ReleaseResolver | None = None,
    session_factory: sessionmaker[Session] | None = None,
    layout: dict[str, Any] | None = None,
    mounts_file: Path = mount.PROC_MOUNTS,
) -> BuildOutcome:
    """Run the full customization pipeline.

    Every exit path unwinds the image, records the outcome in the manifest,
    writes the manifest JSON and persists the build record.

    Args:
        build: Build context (settings, station, manifest, log path).
        request: Operator choices.
        registry: Customization units; defaults to the shipped registry.
        cache: Artifact cache; built from settings if omitted.
        resolver: Release resolver; built from settings if omitted.
        session_factory: Database session factory; settings default if omitted.
        layout: lsblk layout captured on the target machine for partition
            auto-detection. Without it the install disk form decides.
        mounts_file: Kernel mount table checked for residual mounts.

    Returns:
        BuildOutcome of the successful build.

    Raises:
        IsogenError: Any pipeline failure, after unwinding.
        BuildCancelled: If the operator interrupted the build.
    """
    request = request or BuildRequest()
    registry = registry or default_registry()
    settings = build.settings
    manifest = build.manifest
    manifest.status = BuildStatus.RUNNING
    build.minimal = request.minimal

    with ExitStack() as stack:
        if cache is None or resolver is None:
            client = stack.enter_context(httpx.Client())
            cache = cache or ArtifactCache(
                settings.cache_dir,
                client=client,
                offline=settings.offline,
                retries=settings.fetch_retries,
                backoff=settings.fetch_backoff,
                timeout=settings.download_timeout,
            )
            resolver = resolver or ReleaseResolver(
                settings.github_repo, settings.github_api_base, client=client
            )

        logger.info("Starting build %s", manifest.build_id)
        try:
            iso = _run_pipeline(build, request, registry, cache, resolver, layout, mounts_file)
        except KeyboardInterrupt as e:
            error = BuildCancelled("Build interrupted by operator")
            manifest.finish(BuildStatus.CANCELLED, error)
            _save(build, session_factory, strict=False)
            raise error from e
        except BuildCancelled as e:
            manifest.finish(BuildStatus.CANCELLED, e)
            _save(build, session_factory, strict=False)
            raise
        except Exception as e:
            manifest.finish(BuildStatus.FAILED, e)
            _save(build, session_factory, strict=False)
            logger.error("Build %s failed: %s", manifest.build_id, e)
            raise

    manifest.finish(BuildStatus.SUCCEEDED, output_iso=iso)
    manifest_path = _save(build, session_factory, strict=True)
    logger.info("Build %s succeeded: %s", manifest.build_id, iso)
    return BuildOutcome(
        manifest=manifest,
        output_iso=iso,
        log_path=build.log_path,
        manifest_path=manifest_path,
    )


__all__ = [
    "BuildNotFoundError",
    "BuildOutcome",
    "BuildRequest",
    "check_prerequisites",
    "get_build",
    "list_builds",
    "manifest_path_for",
    "persist_manifest",
    "run_build",
]
