"""Image handling module.

This module handles:
- External command execution with streamed logs and signal forwarding
- ISO/squashfs extraction and chroot bind mount lifecycle
- Repacking the customized tree into a bootable ISO
"""

from emcomm_isogen.image.mount import (
    ImageContext,
    chroot_session,
    enter_chroot,
    extract,
    leave_chroot,
    unmount,
    workdir_lock,
)
from emcomm_isogen.image.repack import pack

__all__ = [
    "ImageContext",
    "chroot_session",
    "enter_chroot",
    "extract",
    "leave_chroot",
    "pack",
    "unmount",
    "workdir_lock",
]
