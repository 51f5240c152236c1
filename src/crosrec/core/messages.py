"""
Standardized error and message system for the recovery tool.

Every fatal path raises a RecoveryError subclass carrying a FatalCategory.
The CLI prints the message followed by the category's remediation text and
exits with status 1 (or the exit code carried by UserQuit).
"""

from enum import Enum
from typing import Dict, Optional


class FatalCategory(Enum):
    """Which remediation hint accompanies a fatal error."""
    NONE = "none"
    PERMISSION = "permission"
    NETWORK = "network"


class AcquireFailure(Enum):
    """Stable failure kinds for the download-verify-unpack pipeline."""
    INSUFFICIENT_SPACE = "insufficient_space"
    FETCH_FAILED = "fetch_failed"
    SIZE_MISMATCH = "size_mismatch"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UNPACK_FAILED = "unpack_failed"


REMEDIATIONS: Dict[FatalCategory, str] = {
    FatalCategory.NONE: "",
    FatalCategory.PERMISSION: (
        "You may need to run this program as a different user. If that doesn't "
        "help, try using a different computer, or ask a knowledgeable friend for help."
    ),
    FatalCategory.NETWORK: (
        "You may need to run this program as a different user. If that doesn't "
        "help, it may be a networking problem or a problem with the images "
        "provided by the catalog server. You might want to check to see if there "
        "is a newer version of this tool available, or if someone else has "
        "already reported a problem.\n\n"
        "If all else fails, you could try using a different computer, or ask a "
        "knowledgeable friend for help."
    ),
}


class RecoveryError(Exception):
    """
    Base class for fatal conditions.

    Attributes:
        message: User-facing description of what went wrong
        category: Selects the remediation hint shown after the message
    """
    category: FatalCategory = FatalCategory.NONE

    def __init__(self, message: str, category: Optional[FatalCategory] = None):
        self.message = message
        if category is not None:
            self.category = category
        super().__init__(message)

    @property
    def remediation(self) -> str:
        return REMEDIATIONS[self.category]


class CatalogError(RecoveryError):
    """The catalog could not be fetched, or is not valid."""
    category = FatalCategory.NETWORK


class VersionMismatchError(RecoveryError):
    """The catalog was written for a different tool version."""


class AcquireError(RecoveryError):
    """Download, verification or unpacking of the chosen image failed."""
    category = FatalCategory.NETWORK

    def __init__(self, kind: AcquireFailure, message: str, category: Optional[FatalCategory] = None):
        self.kind = kind
        super().__init__(message, category)


class DeviceError(RecoveryError):
    """The destination device could not be prepared or written."""
    category = FatalCategory.PERMISSION


class UnmountError(DeviceError):
    """A mounted filesystem could not be released."""


class CommandError(RecoveryError):
    """An external program exited with a non-zero status."""
    category = FatalCategory.PERMISSION

    def __init__(self, argv, returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Command failed ({returncode}): {' '.join(self.argv)}{detail}")


class UserQuit(RecoveryError):
    """The user asked to stop. Not an error in itself, but it ends the run."""

    def __init__(self, message: str = "quitting...", exit_code: int = 1):
        self.exit_code = exit_code
        super().__init__(message)
