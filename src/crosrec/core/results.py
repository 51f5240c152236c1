"""
Result objects passed between the pipeline stages.

DownloadArtifact is what the download pipeline hands to the image writer;
WriteResult is what the writer hands back to the CLI for its summary.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple


@dataclass(frozen=True)
class DownloadArtifact:
    """
    A verified, unpacked image ready to be written.

    Attributes:
        path: Local path of the unpacked image file
        size: Verified size of the unpacked file in bytes
        required_mb: Capacity (MB, rounded up) needed to hold the image
    """
    path: Path
    size: int
    required_mb: int


@dataclass
class WriteResult:
    """
    What was written to the destination drive.

    Attributes:
        device: Destination disk node
        rootfs_partition: Partition node that received the root filesystem
        rootfs_sectors: (start, count) of the copied region inside the image
        kernel_slots: Kernel files replaced on the destination
        bytes_written: Root filesystem bytes copied
        warnings: Non-blocking issues, such as an undersized drive
    """
    device: str
    rootfs_partition: str = ""
    rootfs_sectors: Tuple[int, int] = (0, 0)
    kernel_slots: List[str] = field(default_factory=list)
    bytes_written: int = 0
    warnings: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_summary(self) -> str:
        """Plain-text report for the end of a run."""
        start, count = self.rootfs_sectors
        lines = [f"Wrote recovery image to {self.device}"]

        if self.kernel_slots:
            lines.append(f"  Kernel slots: {', '.join(self.kernel_slots)}")
        if self.rootfs_partition:
            lines.append(f"  Root filesystem: sectors {start}+{count} -> {self.rootfs_partition}")
        if self.bytes_written:
            lines.append(f"  Bytes: {self.bytes_written:,}")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        return "\n".join(lines)
