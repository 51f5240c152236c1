"""
Host capability detection.

Decides once, at startup, which checksum algorithm, unpack method, device
enumeration backend and partition-table tool this run will use. The result
is an immutable HostCapabilities value passed to every component.
"""

import hashlib
import logging
import platform
import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

# Stronger digest first.
CHECKSUM_PREFERENCE: Tuple[str, ...] = ("sha1", "md5")


class UnpackMethod(Enum):
    """How the downloaded container is turned into the image file."""
    ZIP = "zip"      # extract a named member from an archive
    GZIP = "gzip"    # decompress a single stream


class DeviceBackendKind(Enum):
    DISKUTIL = "diskutil"   # removable-media backend (macOS)
    SYSFS = "sysfs"         # generic block-device backend (Linux)


class PartitionTool(Enum):
    CGPT = "cgpt"
    SFDISK = "sfdisk"


@dataclass(frozen=True)
class HostCapabilities:
    """
    What this host can do, decided once per run.

    Attributes:
        checksum_kind: Digest algorithm used to verify downloads ("sha1" or "md5")
        unpack_method: Archive extraction or stream decompression
        device_backend: Which device enumerator to use
        partition_tool: Which program reads partition tables
        missing_tools: Required programs that were not found on PATH
    """
    checksum_kind: str = "sha1"
    unpack_method: UnpackMethod = UnpackMethod.ZIP
    device_backend: DeviceBackendKind = DeviceBackendKind.SYSFS
    partition_tool: PartitionTool = PartitionTool.CGPT
    missing_tools: Tuple[str, ...] = field(default_factory=tuple)


def pick_checksum_kind(available=None) -> str:
    """Return the first algorithm of CHECKSUM_PREFERENCE the host supports."""
    names = {a.lower() for a in (available if available is not None else hashlib.algorithms_available)}
    for kind in CHECKSUM_PREFERENCE:
        if kind in names:
            return kind
    raise ValueError("No supported checksum algorithm (need sha1 or md5)")


def detect_host(
    checksum_override: Optional[str] = None,
    unpack_override: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
    system: Optional[str] = None,
) -> HostCapabilities:
    """
    Probe the host and build its HostCapabilities.

    Args:
        checksum_override: Force "sha1" or "md5" instead of the preference order
        unpack_override: Force "zip" or "gzip"
        which: PATH lookup (injectable for tests)
        system: platform.system() value (injectable for tests)
    """
    if checksum_override:
        kind = checksum_override.strip().lower()
        if kind not in CHECKSUM_PREFERENCE:
            raise ValueError(f"Unsupported checksum kind '{checksum_override}'. Use sha1 or md5.")
    else:
        kind = pick_checksum_kind()

    unpack = UnpackMethod(unpack_override.strip().lower()) if unpack_override else UnpackMethod.ZIP

    system = system or platform.system()
    if system == "Darwin" and which("diskutil"):
        backend = DeviceBackendKind.DISKUTIL
    else:
        backend = DeviceBackendKind.SYSFS

    tool = PartitionTool.CGPT if which("cgpt") else PartitionTool.SFDISK

    required = ["mount", "umount" if backend is DeviceBackendKind.SYSFS else "diskutil", tool.value]
    missing = tuple(name for name in required if not which(name))

    caps = HostCapabilities(
        checksum_kind=kind,
        unpack_method=unpack,
        device_backend=backend,
        partition_tool=tool,
        missing_tools=missing,
    )
    logger.debug("Host capabilities: %s", caps)
    return caps
