"""Error taxonomy for emcomm_isogen.

Every error carries a stable ``code`` string for structured reporting
and an ``exit_code`` used by the CLI.
"""

from __future__ import annotations

EXIT_FAILURE = 1
EXIT_PREREQUISITES = 2
EXIT_NETWORK = 3
EXIT_CANCELLED = 130


class IsogenError(Exception):
    """Base class for all pipeline errors."""

    exit_code = EXIT_FAILURE

    def __init__(self, message: str, code: str = "isogen_error") -> None:
        """Initialize IsogenError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class PrerequisiteError(IsogenError):
    """Raised when required tools, privileges or config files are missing."""

    exit_code = EXIT_PREREQUISITES

    def __init__(self, message: str, code: str = "missing_prerequisite") -> None:
        super().__init__(message, code)


class FetchError(IsogenError):
    """Raised when an artifact cannot be obtained."""

    exit_code = EXIT_NETWORK

    def __init__(
        self,
        message: str,
        retries: int = 0,
        code: str = "fetch_error",
    ) -> None:
        super().__init__(message, code)
        self.retries = retries


class IntegrityError(IsogenError):
    """Raised when a cached artifact does not match its recorded checksum."""

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
        code: str = "integrity_error",
    ) -> None:
        super().__init__(message, code)
        self.expected = expected
        self.actual = actual


class CommandError(IsogenError):
    """Raised when an external command cannot be run or exits nonzero."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        argv: list[str] | None = None,
        code: str = "command_error",
    ) -> None:
        super().__init__(message, code)
        self.returncode = returncode
        self.argv = argv or []


class MountError(IsogenError):
    """Raised on extraction, bind mount or lock failures."""

    def __init__(self, message: str, code: str = "mount_error") -> None:
        super().__init__(message, code)


class InstallerFailure(IsogenError):
    """Raised when the upstream installer fails inside the chroot."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "installer_failure",
    ) -> None:
        super().__init__(message, code)
        self.installer_exit_code = exit_code


class CustomizationUnitFailure(IsogenError):
    """Raised when a core customization unit fails."""

    def __init__(
        self,
        message: str,
        unit: str,
        code: str = "unit_failure",
    ) -> None:
        super().__init__(message, code)
        self.unit = unit


class OrderingViolation(IsogenError):
    """Raised when the unit registry declares a conflicting order."""

    def __init__(
        self,
        message: str,
        units: tuple[str, ...] = (),
        code: str = "ordering_violation",
    ) -> None:
        super().__init__(message, code)
        self.units = units


class NetworkProfileError(IsogenError):
    """Raised when a network profile cannot be written with the right format or mode."""

    def __init__(self, message: str, code: str = "network_profile_error") -> None:
        super().__init__(message, code)


class PreseedGenerationError(IsogenError):
    """Raised when a preseed cannot be generated from the profile."""

    def __init__(self, message: str, code: str = "preseed_error") -> None:
        super().__init__(message, code)


class RepackError(IsogenError):
    """Raised when the squashfs or ISO cannot be rebuilt."""

    def __init__(self, message: str, code: str = "repack_error") -> None:
        super().__init__(message, code)


class BuildCancelled(IsogenError):
    """Raised when the operator interrupts the build."""

    exit_code = EXIT_CANCELLED

    def __init__(self, message: str = "Build cancelled", code: str = "cancelled") -> None:
        super().__init__(message, code)


__all__ = [
    "EXIT_CANCELLED",
    "EXIT_FAILURE",
    "EXIT_NETWORK",
    "EXIT_PREREQUISITES",
    "BuildCancelled",
    "CommandError",
    "CustomizationUnitFailure",
    "FetchError",
    "InstallerFailure",
    "IntegrityError",
    "IsogenError",
    "MountError",
    "NetworkProfileError",
    "OrderingViolation",
    "PreseedGenerationError",
    "PrerequisiteError",
    "RepackError",
]
