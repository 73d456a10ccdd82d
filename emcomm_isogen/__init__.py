"""EmComm ISO Generator - build unattended EmComm Tools Community installers.

This package customizes a stock Ubuntu desktop ISO into a turnkey
EmComm Tools Community image: it fetches and verifies artifacts, runs the
upstream installer inside a chroot, applies ordered customization units,
writes an unattended-install preseed and repacks the ISO.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
