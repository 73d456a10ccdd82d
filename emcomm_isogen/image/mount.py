"""Image extraction and chroot management.

This module handles:
- Extracting the ISO tree and unpacking its squashfs root filesystem
- Binding /dev, /dev/pts, /proc, /sys and /run into the root for chroot work
- Releasing bind mounts in strict reverse order on every exit path
- A per-work-directory lock so only one image context is live at a time

The ImageContext state machine is
unextracted -> extracted -> chroot-bound -> unmounting -> unmounted,
with failed reachable from every state.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from emcomm_isogen.errors import CommandError, MountError
from emcomm_isogen.image import command
from emcomm_isogen.types import MountState

logger = logging.getLogger(__name__)

# Bound in this order, released in reverse
BIND_MOUNTS = ("dev", "dev/pts", "proc", "sys", "run")

# Marks a work directory created by this tool, safe to clear and reuse
REUSABLE_MARKER = ".isogen-workdir"

PROC_MOUNTS = Path("/proc/self/mounts")

_TRANSITIONS: dict[MountState, set[MountState]] = {
    MountState.UNEXTRACTED: {MountState.EXTRACTED},
    MountState.EXTRACTED: {MountState.CHROOT_BOUND, MountState.UNMOUNTING},
    MountState.CHROOT_BOUND: {MountState.UNMOUNTING},
    MountState.UNMOUNTING: {MountState.UNMOUNTED},
    MountState.UNMOUNTED: set(),
    MountState.FAILED: {MountState.UNMOUNTING},
}


@dataclass
class ImageContext:
    """A live, extracted image.

    Attributes:
        work_dir: Scratch directory owning both trees.
        iso_root: Extracted ISO file tree (boot loader, preseed, squashfs).
        squashfs_root: Unpacked root filesystem of the live system.
        squashfs_file: filesystem.squashfs inside iso_root.
        state: Current lifecycle state.
        bound: Bind mount targets currently held, in mount order.
        log_path: Build log receiving child process output.
    """

    work_dir: Path
    iso_root: Path
    squashfs_root: Path
    squashfs_file: Path | None = None
    state: MountState = MountState.UNEXTRACTED
    bound: list[Path] = field(default_factory=list)
    log_path: Path | None = None
    resolv_link: str | None = None

    def transition(self, new_state: MountState) -> None:
        """Move to a new state, rejecting illegal transitions.

        Raises:
            MountError: If the transition is not allowed.
        """
        if new_state == MountState.FAILED:
            self.state = new_state
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise MountError(
                f"Illegal image state transition {self.state.value} -> {new_state.value}",
                code="illegal_transition",
            )
        logger.debug("Image state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def fail(self) -> None:
        self.transition(MountState.FAILED)


def new_context(work_dir: Path, log_path: Path | None = None) -> ImageContext:
    """Return an unextracted context for a work directory."""
    return ImageContext(
        work_dir=work_dir,
        iso_root=work_dir / "iso",
        squashfs_root=work_dir / "squashfs",
        log_path=log_path,
    )


def _unescape_mount_field(value: str) -> str:
    # /proc/self/mounts escapes space, tab, newline and backslash as octal
    for escaped, plain in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        value = value.replace(escaped, plain)
    return value


def residual_mounts(root: Path, mounts_file: Path = PROC_MOUNTS) -> list[Path]:
    """List mount points at or below root.

    Args:
        root: Directory to inspect.
        mounts_file: Kernel mount table.

    Returns:
        Mount points under root, deepest first.
    """
    if not mounts_file.exists():
        return []
    root_str = str(root.resolve())
    found: list[Path] = []
    for line in mounts_file.read_text(encoding="utf-8", errors="replace").splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        target = _unescape_mount_field(parts[1])
        if target == root_str or target.startswith(root_str + "/"):
            found.append(Path(target))
    return sorted(found, key=lambda p: len(p.parts), reverse=True)


@contextmanager
def workdir_lock(work_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on a work directory.

    The lock file lives next to the work directory so it does not count
    as content of the directory itself.

    Args:
        work_dir: Work directory to lock.

    Yields:
        None while the lock is held.

    Raises:
        MountError: If another build holds the lock.
    """
    work_dir.parent.mkdir(parents=True, exist_ok=True)
    lock_file = work_dir.parent / f".{work_dir.name}.lock"

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise MountError(
                f"Work directory {work_dir} is in use by another build",
                code="workdir_locked",
            ) from None
        logger.debug("Work directory lock acquired: %s", lock_file)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Work directory lock released: %s", lock_file)
    finally:
        os.close(fd)


def is_reusable(work_dir: Path) -> bool:
    return (work_dir / REUSABLE_MARKER).exists()


def clear_work_dir(work_dir: Path) -> None:
    """Remove a work directory after checking nothing is still mounted in it.

    Raises:
        MountError: If mounts remain below the directory.
    """
    if not work_dir.exists():
        return
    leftovers = residual_mounts(work_dir)
    if leftovers:
        raise MountError(
            f"Refusing to remove {work_dir}: still mounted: "
            + ", ".join(str(p) for p in leftovers),
            code="residual_mounts",
        )
    shutil.rmtree(work_dir)
    logger.debug("Removed work directory %s", work_dir)


def extract(
    iso_path: Path,
    work_dir: Path,
    log_path: Path | None = None,
) -> ImageContext:
    """Extract an ISO and its root filesystem into a work directory.

    Args:
        iso_path: Base ISO image.
        work_dir: Target directory; must be empty, missing or carry the marker
            of a previous run, in which case it is cleared.
        log_path: Build log receiving tool output.

    Returns:
        ImageContext in the extracted state.

    Raises:
        MountError: If the work directory is not usable or extraction fails.
    """
    ctx = new_context(work_dir, log_path=log_path)

    if work_dir.exists() and any(work_dir.iterdir()):
        if not is_reusable(work_dir):
            raise MountError(
                f"Work directory {work_dir} is not empty; "
                "remove it or choose another work directory",
                code="workdir_not_empty",
            )
        logger.info("Clearing reusable work directory %s", work_dir)
        clear_work_dir(work_dir)

    ctx.iso_root.mkdir(parents=True, exist_ok=True)
    ctx.squashfs_root.parent.mkdir(parents=True, exist_ok=True)
    (work_dir / REUSABLE_MARKER).write_text("created by emcomm-isogen\n", encoding="utf-8")

    try:
        logger.info("Extracting ISO structure from %s", iso_path)
        command.run_command(
            ["xorriso", "-osirrox", "on", "-indev", iso_path, "-extract", "/", ctx.iso_root],
            log_path=log_path,
        )

        squashfs_files = sorted(ctx.iso_root.rglob("filesystem.squashfs"))
        if not squashfs_files:
            raise MountError(
                f"Could not find filesystem.squashfs in {iso_path}",
                code="squashfs_not_found",
            )
        ctx.squashfs_file = squashfs_files[0]

        logger.info("Unpacking %s (this takes several minutes)", ctx.squashfs_file)
        command.run_command(
            ["unsquashfs", "-d", ctx.squashfs_root, "-f", ctx.squashfs_file],
            log_path=log_path,
        )
    except CommandError as e:
        ctx.fail()
        raise MountError(f"Image extraction failed: {e}", code="extract_failed") from e
    except MountError:
        ctx.fail()
        raise

    ctx.transition(MountState.EXTRACTED)
    logger.info("Image extracted to %s", work_dir)
    return ctx


def _unbind_all(ctx: ImageContext) -> list[str]:
    """Release held bind mounts in reverse order, returning failures."""
    failures: list[str] = []
    for target in reversed(list(ctx.bound)):
        try:
            command.run_command(["umount", target], log_path=ctx.log_path)
        except CommandError as e:
            logger.warning("umount %s failed (%s), retrying lazily", target, e)
            try:
                command.run_command(["umount", "-l", target], log_path=ctx.log_path)
            except CommandError as lazy_error:
                failures.append(f"{target}: {lazy_error}")
                continue
        ctx.bound.remove(target)
        logger.debug("Unbound %s", target)
    return failures


def _install_resolv_conf(ctx: ImageContext) -> None:
    resolv = ctx.squashfs_root / "etc" / "resolv.conf"
    host_resolv = Path("/etc/resolv.conf")
    if not host_resolv.exists():
        return
    # A symlink here points into the bound /run; replace it instead of writing through
    if resolv.is_symlink():
        ctx.resolv_link = os.readlink(resolv)
        resolv.unlink()
    resolv.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(host_resolv, resolv)


def _restore_resolv_conf(ctx: ImageContext) -> None:
    if ctx.resolv_link is None:
        return
    resolv = ctx.squashfs_root / "etc" / "resolv.conf"
    resolv.unlink(missing_ok=True)
    resolv.symlink_to(ctx.resolv_link)
    ctx.resolv_link = None


def enter_chroot(ctx: ImageContext, binds: Sequence[str] = BIND_MOUNTS) -> None:
    """Bind host pseudo filesystems into the root and verify chroot entry.

    A failure unwinds whatever was already bound before raising.

    Args:
        ctx: Extracted image context.
        binds: Host paths (relative to /) to bind, in order.

    Raises:
        MountError: If binding or the chroot liveness check fails.
    """
    if ctx.state != MountState.EXTRACTED:
        raise MountError(
            f"Cannot enter chroot from state {ctx.state.value}",
            code="illegal_transition",
        )

    try:
        for rel in binds:
            source = Path("/") / rel
            target = ctx.squashfs_root / rel
            target.mkdir(parents=True, exist_ok=True)
            command.run_command(["mount", "--bind", source, target], log_path=ctx.log_path)
            ctx.bound.append(target)
            logger.debug("Bound %s -> %s", source, target)

        _install_resolv_conf(ctx)
        command.run_command(
            ["chroot", ctx.squashfs_root, "/bin/true"], log_path=ctx.log_path
        )
    except (CommandError, OSError) as e:
        ctx.fail()
        _restore_resolv_conf(ctx)
        failures = _unbind_all(ctx)
        if failures:
            logger.error("Unwinding bind mounts left: %s", "; ".join(failures))
        raise MountError(f"Failed to enter chroot: {e}", code="chroot_failed") from e

    ctx.transition(MountState.CHROOT_BOUND)
    logger.info("Chroot ready at %s", ctx.squashfs_root)


def leave_chroot(ctx: ImageContext) -> None:
    """Release all bind mounts in strict reverse order.

    Falls back to a lazy unmount per mount point. Safe to call when nothing
    is bound.

    Raises:
        MountError: If any mount point could not be released.
    """
    _restore_resolv_conf(ctx)
    failures = _unbind_all(ctx)
    if failures:
        ctx.fail()
        raise MountError(
            "Bind mounts still held after unwinding: " + "; ".join(failures),
            code="unbind_failed",
        )
    if ctx.state == MountState.CHROOT_BOUND:
        ctx.transition(MountState.UNMOUNTING)
        logger.info("Left chroot %s", ctx.squashfs_root)


def unmount(ctx: ImageContext, mounts_file: Path = PROC_MOUNTS) -> None:
    """Release every resource held by the image and mark it unmounted.

    Raises:
        MountError: If mounts remain below the work directory.
    """
    if ctx.state == MountState.UNMOUNTED:
        return
    if ctx.bound:
        leave_chroot(ctx)
    if ctx.state != MountState.UNMOUNTING:
        ctx.transition(MountState.UNMOUNTING)

    leftovers = residual_mounts(ctx.work_dir, mounts_file)
    if leftovers:
        ctx.fail()
        raise MountError(
            "Residual mounts below work directory: "
            + ", ".join(str(p) for p in leftovers),
            code="residual_mounts",
        )
    ctx.transition(MountState.UNMOUNTED)


@contextmanager
def chroot_session(ctx: ImageContext) -> Iterator[ImageContext]:
    """Enter the chroot for the duration of a block.

    Bind mounts are released on normal exit, on error and on cancellation.
    """
    enter_chroot(ctx)
    try:
        yield ctx
    except BaseException:
        ctx.fail()
        try:
            leave_chroot(ctx)
        except MountError as unwind_error:
            logger.error("Chroot unwind incomplete: %s", unwind_error)
        raise
    leave_chroot(ctx)


def run_in_chroot(
    ctx: ImageContext,
    argv: Sequence[str | Path],
    **kwargs: object,
) -> command.CommandResult:
    """Run a command inside the chroot.

    Raises:
        MountError: If the chroot is not bound.
    """
    if ctx.state != MountState.CHROOT_BOUND:
        raise MountError(
            f"Chroot not bound (state {ctx.state.value})", code="chroot_not_bound"
        )
    kwargs.setdefault("log_path", ctx.log_path)
    return command.run_command(["chroot", ctx.squashfs_root, *argv], **kwargs)  # type: ignore[arg-type]


__all__ = [
    "BIND_MOUNTS",
    "ImageContext",
    "chroot_session",
    "clear_work_dir",
    "enter_chroot",
    "extract",
    "leave_chroot",
    "new_context",
    "residual_mounts",
    "run_in_chroot",
    "unmount",
    "workdir_lock",
]
