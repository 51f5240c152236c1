"""
Removable device discovery.

Two backends share one interface:

- DiskutilBackend asks macOS ``diskutil`` for ejectable USB disks
- SysfsBackend walks ``/proc/partitions`` and ``/sys/block`` on Linux

Only disks that are both removable and attached over USB are listed, in the
order the backend reports them. The backend is chosen once from the host
capabilities with select_backend().
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from crosrec.core.messages import CommandError, UnmountError
from crosrec.core.parsing import MB
from crosrec.host import DeviceBackendKind, HostCapabilities
from crosrec.utils.command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512


@dataclass(frozen=True)
class Device:
    """
    A candidate destination disk.

    Attributes:
        name: Base device name ("sdb", "disk2")
        node: Device node path ("/dev/sdb")
        size_mb: Capacity in MB (1024 * 1024 bytes), rounded down
        description: One-line vendor/model text shown to the user
    """
    name: str
    node: str
    size_mb: int
    description: str


class DeviceBackend(ABC):
    """Platform-specific device enumeration and release."""

    @abstractmethod
    def list_devices(self) -> List[Device]:
        """Return removable, directly attached disks."""

    @abstractmethod
    def unmount_device(self, device: Device) -> None:
        """
        Unmount the disk and every mounted partition on it.

        Raises:
            UnmountError: If anything stays mounted
        """

    @abstractmethod
    def partition_node(self, node: str, number: int) -> str:
        """Device node of partition ``number`` on disk ``node``."""


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


class SysfsBackend(DeviceBackend):
    """Generic Linux block-device backend."""

    def __init__(
        self,
        sys_root: Path = Path("/sys"),
        proc_root: Path = Path("/proc"),
        dev_root: str = "/dev",
        run: Callable[..., CmdResult] = run_cmd,
    ):
        self.sys_root = Path(sys_root)
        self.proc_root = Path(proc_root)
        self.dev_root = dev_root
        self.run = run

    def _candidate_names(self) -> List[str]:
        text = _read(self.proc_root / "partitions") or ""
        names = []
        for line in text.splitlines():
            fields = line.split()
            if len(fields) == 4 and fields[0].isdigit():
                names.append(fields[3])
        return names

    def _is_usb_removable(self, name: str) -> bool:
        block = self.sys_root / "block" / name
        if _read(block / "device" / "type") != "0":
            return False
        if _read(block / "removable") != "1":
            return False
        return "usb" in str(block.resolve()).lower()

    def list_devices(self) -> List[Device]:
        devices = []
        for name in self._candidate_names():
            if not self._is_usb_removable(name):
                continue
            block = self.sys_root / "block" / name
            sectors = int(_read(block / "size") or 0)
            vendor = _read(block / "device" / "vendor") or ""
            model = _read(block / "device" / "model") or ""
            node = f"{self.dev_root}/{name}"
            decimal_mb = sectors * SECTOR_SIZE // 1000000
            devices.append(Device(
                name=name,
                node=node,
                size_mb=sectors * SECTOR_SIZE // MB,
                description=f"{node} {decimal_mb}MB {vendor} {model}".rstrip(),
            ))
        logger.debug("sysfs devices: %s", [d.name for d in devices])
        return devices

    def _mounts_on(self, device: Device) -> List[str]:
        pattern = re.compile(rf"^{re.escape(device.node)}(p?\d+)?$")
        mountpoints = []
        for line in (_read(self.proc_root / "mounts") or "").splitlines():
            fields = line.split()
            if len(fields) >= 2 and pattern.match(fields[0]):
                mountpoints.append(fields[1].replace("\\040", " "))
        return mountpoints

    def unmount_device(self, device: Device) -> None:
        for mountpoint in self._mounts_on(device):
            try:
                self.run(["umount", mountpoint])
            except CommandError as exc:
                raise UnmountError(f"Unable to unmount {mountpoint}.") from exc

    def partition_node(self, node: str, number: int) -> str:
        # nvme/mmcblk/loop devices use a p separator
        if node[-1:].isdigit():
            return f"{node}p{number}"
        return f"{node}{number}"


class DiskutilBackend(DeviceBackend):
    """macOS removable-media backend."""

    def __init__(self, run: Callable[..., CmdResult] = run_cmd):
        self.run = run

    def _info(self, node: str) -> str:
        return self.run(["diskutil", "info", node], check=False).stdout

    def list_devices(self) -> List[Device]:
        listing = self.run(["diskutil", "list"]).stdout
        devices = []
        for line in listing.splitlines():
            if not line.startswith("/dev"):
                continue
            node = line.split()[0]
            info = self._info(node)
            if not re.search(r"Ejectable:\s*Yes", info):
                continue
            if not re.search(r"Protocol:\s*USB", info):
                continue
            size_match = re.search(r"\((\d+) Bytes\)", info)
            num_bytes = int(size_match.group(1)) if size_match else 0
            media = re.search(r"Device / Media Name:\s*(.*)", info)
            total = re.search(r"Total Size:\s*([^(]*)", info)
            media_text = media.group(1).strip() if media else ""
            total_text = total.group(1).strip() if total else ""
            devices.append(Device(
                name=node.replace("/dev/", "", 1),
                node=node,
                size_mb=num_bytes // MB,
                description=f"{node}  {total_text} {media_text}".rstrip(),
            ))
        logger.debug("diskutil devices: %s", [d.name for d in devices])
        return devices

    def unmount_device(self, device: Device) -> None:
        try:
            self.run(["diskutil", "unmountDisk", device.node])
        except CommandError as exc:
            raise UnmountError(f"Unable to unmount {device.node}.") from exc

    def partition_node(self, node: str, number: int) -> str:
        # disk2 -> disk2s3
        return f"{node}s{number}"


def select_backend(caps: HostCapabilities) -> DeviceBackend:
    if caps.device_backend is DeviceBackendKind.DISKUTIL:
        return DiskutilBackend()
    return SysfsBackend()
