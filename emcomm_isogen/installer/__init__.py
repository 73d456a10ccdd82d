"""Upstream installer module.

This module handles:
- Unpacking and running the EmComm Tools installer inside the image chroot
- Verifying the installation result
"""

from emcomm_isogen.installer.runner import ExitStatus, run, unpack_installer

__all__ = ["ExitStatus", "run", "unpack_installer"]
