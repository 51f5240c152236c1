"""
Write a verified recovery image onto the destination disk.

Sequence:
    1. unmount the destination disk and its partitions
    2. look up partitions 3 (root filesystem) and 12 (EFI/kernel) in the image
    3. copy the recovery kernel from the image's partition 12 into both
       kernel slots on the destination's partition 12
    4. copy the root filesystem sectors from the image onto the
       destination's partition 3

Step 4 overwrites the destination in place. There is no rollback; an
interrupted copy leaves the disk in an unknown state.
"""

import json
import logging
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from crosrec.core.messages import CommandError, DeviceError, UnmountError
from crosrec.core.results import DownloadArtifact, WriteResult
from crosrec.devices import SECTOR_SIZE, Device, DeviceBackend
from crosrec.host import HostCapabilities, PartitionTool
from crosrec.transfer import ProgressCallback
from crosrec.utils.command import CmdResult, run_cmd

logger = logging.getLogger(__name__)

ROOTFS_PARTITION = 3
KERNEL_PARTITION = 12
KERNEL_SOURCE = "syslinux/vmlinuz.B"
KERNEL_SLOTS = ("syslinux/vmlinuz.B", "syslinux/vmlinuz.A")
COPY_CHUNK = 2048 * SECTOR_SIZE


@dataclass(frozen=True)
class PartitionExtent:
    """Location of one partition inside a disk image, in 512-byte sectors."""
    number: int
    start: int
    size: int

    @property
    def start_bytes(self) -> int:
        return self.start * SECTOR_SIZE

    @property
    def size_bytes(self) -> int:
        return self.size * SECTOR_SIZE


class PartitionReader(ABC):
    """Reads partition extents out of a partitioned disk image."""

    def __init__(self, run: Callable[..., CmdResult] = run_cmd):
        self.run = run

    @abstractmethod
    def extent(self, image: Path, number: int) -> PartitionExtent:
        """
        Raises:
            DeviceError: If the partition table cannot be read or lacks ``number``
        """


class CgptReader(PartitionReader):
    def _query(self, image: Path, number: int, flag: str) -> int:
        out = self.run(["cgpt", "show", "-i", str(number), "-n", flag, "-q", str(image)]).stdout.strip()
        if not out.isdigit():
            raise DeviceError(f"Partition {number} not found in {image.name}")
        return int(out)

    def extent(self, image: Path, number: int) -> PartitionExtent:
        try:
            start = self._query(image, number, "-b")
            size = self._query(image, number, "-s")
        except CommandError as exc:
            raise DeviceError(f"Unable to read the partition table of {image.name}") from exc
        return PartitionExtent(number=number, start=start, size=size)


class SfdiskReader(PartitionReader):
    def extent(self, image: Path, number: int) -> PartitionExtent:
        try:
            out = self.run(["sfdisk", "--json", str(image)]).stdout
            table = json.loads(out)["partitiontable"]
        except (CommandError, ValueError, KeyError) as exc:
            raise DeviceError(f"Unable to read the partition table of {image.name}") from exc

        suffix = re.compile(rf"^p?{number}$")
        for part in table.get("partitions", []):
            node = part.get("node", "")
            if node.startswith(str(image)) and suffix.match(node[len(str(image)):]):
                return PartitionExtent(number=number, start=int(part["start"]), size=int(part["size"]))
        raise DeviceError(f"Partition {number} not found in {image.name}")


def select_partition_reader(caps: HostCapabilities) -> PartitionReader:
    if caps.partition_tool is PartitionTool.CGPT:
        return CgptReader()
    return SfdiskReader()


class Mounter:
    """mount/umount through the host's programs."""

    def __init__(self, run: Callable[..., CmdResult] = run_cmd):
        self.run = run

    def mount(self, source: str, target: Path, options: Sequence[str] = (), fstype: Optional[str] = None) -> None:
        argv: List[str] = ["mount"]
        if options:
            argv += ["-o", ",".join(options)]
        if fstype:
            argv += ["-t", fstype]
        argv += [source, str(target)]
        try:
            self.run(argv)
        except CommandError as exc:
            raise DeviceError(f"Unable to mount {source}.") from exc

    def unmount(self, target: Path) -> None:
        try:
            self.run(["umount", str(target)])
        except CommandError as exc:
            raise UnmountError(f"Unable to unmount {target}.") from exc


def patch_kernels(
    image: Path,
    kernel: PartitionExtent,
    dest_node: str,
    workdir: Path,
    mounter: Mounter,
) -> List[str]:
    """
    Copy the image's recovery kernel into both kernel slots on the
    destination kernel partition ``dest_node``.

    Returns:
        The slot paths written, relative to the kernel partition.
    """
    src_mnt = workdir / "chrome_efi_mount"
    dst_mnt = workdir / "chromium_efi_mount"
    src_mnt.mkdir(exist_ok=True)
    dst_mnt.mkdir(exist_ok=True)

    mounter.mount(str(image), src_mnt, options=["ro", "loop", f"offset={kernel.start_bytes}"])
    try:
        mounter.mount(dest_node, dst_mnt, fstype="vfat")
        try:
            source = src_mnt / KERNEL_SOURCE
            for slot in KERNEL_SLOTS:
                logger.debug("copy %s -> %s", source, dst_mnt / slot)
                try:
                    shutil.copyfile(source, dst_mnt / slot)
                except OSError as exc:
                    raise DeviceError(f"Unable to copy the recovery kernel to {slot}: {exc}") from exc
        finally:
            mounter.unmount(dst_mnt)
    finally:
        mounter.unmount(src_mnt)
    return list(KERNEL_SLOTS)


def copy_region(
    image: Path,
    dest: str,
    start_sector: int,
    sector_count: int,
    progress_cb: Optional[ProgressCallback] = None,
) -> int:
    """
    Copy ``sector_count`` sectors starting at ``start_sector`` of ``image``
    to the beginning of ``dest``.

    Returns:
        Number of bytes written.
    """
    total = sector_count * SECTOR_SIZE
    copied = 0
    try:
        dst = open(dest, "r+b")
    except OSError as exc:
        raise DeviceError(f"Unable to open {dest} for writing: {exc}") from exc
    with dst, open(image, "rb") as src:
        src.seek(start_sector * SECTOR_SIZE)
        while copied < total:
            buf = src.read(min(COPY_CHUNK, total - copied))
            if not buf:
                raise DeviceError(
                    f"{Path(image).name} ended after {copied} of {total} root filesystem bytes"
                )
            dst.write(buf)
            copied += len(buf)
            if progress_cb:
                progress_cb(copied, total)
        dst.flush()
        os.fsync(dst.fileno())
    return copied


def write_image(
    artifact: DownloadArtifact,
    device: Device,
    backend: DeviceBackend,
    workdir: Path,
    reader: PartitionReader,
    mounter: Optional[Mounter] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> WriteResult:
    """
    Put the recovery image onto ``device``.

    Returns:
        WriteResult describing the copied region.

    Raises:
        UnmountError: If the destination cannot be unmounted
        DeviceError: If partitions cannot be located, mounted or copied
    """
    mounter = mounter or Mounter()
    result = WriteResult(device=device.node)
    if device.size_mb < artifact.required_mb:
        result.add_warning(
            f"{device.node} holds {device.size_mb}MB but the image needs {artifact.required_mb}MB"
        )

    backend.unmount_device(device)

    rootfs = reader.extent(artifact.path, ROOTFS_PARTITION)
    kernel = reader.extent(artifact.path, KERNEL_PARTITION)
    logger.info("RootFS Start: %d  RootFS Size: %d", rootfs.start, rootfs.size)

    kernel_node = backend.partition_node(device.node, KERNEL_PARTITION)
    result.kernel_slots = patch_kernels(artifact.path, kernel, kernel_node, Path(workdir), mounter)

    dest = backend.partition_node(device.node, ROOTFS_PARTITION)
    copied = copy_region(artifact.path, dest, rootfs.start, rootfs.size, progress_cb)

    result.rootfs_partition = dest
    result.rootfs_sectors = (rootfs.start, rootfs.size)
    result.bytes_written = copied
    return result
