"""
img-tool data models.

Defines images, partition tables, loop bindings and resize reports.
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from imgtool.core.errors import ValidationError

SECTOR_SIZE = 512
FS_BLOCK_SIZE = 4096

# MBR type codes; GPT type GUIDs are matched lowercase.
LINUX_TYPES = frozenset({"83", "0fc63daf-8483-4772-8e79-3d69d8477de4"})
FAT_TYPES = frozenset(
    {
        "1",
        "4",
        "6",
        "b",
        "c",
        "e",
        "ef",
        "c12a7328-f81f-11d2-ba4b-00a0c93ec93b",
        "ebd0a0a2-b9e5-4433-87c0-68b6b72699c7",
    }
)


def round_up(value: int, multiple: int) -> int:
    """Round value up to the next multiple."""
    return -(-value // multiple) * multiple


class ImageKind(Enum):
    """Backing storage of an image."""

    FILE = "file"
    BLOCK_DEVICE = "blockDevice"


@dataclass(frozen=True)
class Image:
    """A raw disk image backed by a regular file or a block device."""

    path: Path

    def validate(self) -> ImageKind:
        """Raise ValidationError unless the path is a file or block device."""
        return self.kind

    @property
    def kind(self) -> ImageKind:
        try:
            mode = os.stat(self.path).st_mode
        except OSError as e:
            raise ValidationError(f"Cannot access image {self.path}: {e}") from e

        if stat.S_ISBLK(mode):
            return ImageKind.BLOCK_DEVICE
        if stat.S_ISREG(mode):
            return ImageKind.FILE
        raise ValidationError(f"Not a regular file or block device: {self.path}")

    @property
    def size_bytes(self) -> int:
        """Logical length of a file-backed image."""
        return os.stat(self.path).st_size

    @property
    def allocated_bytes(self) -> int:
        """Bytes actually allocated on disk (sparse files count less)."""
        return os.stat(self.path).st_blocks * 512

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class Partition:
    """One entry of a partition table, in 512-byte sectors."""

    number: int
    type_tag: str
    start_sector: int
    size_sectors: int

    @property
    def start_bytes(self) -> int:
        return self.start_sector * SECTOR_SIZE

    @property
    def size_bytes(self) -> int:
        return self.size_sectors * SECTOR_SIZE

    @property
    def end_bytes(self) -> int:
        return self.start_bytes + self.size_bytes

    @property
    def is_linux(self) -> bool:
        return self.type_tag.lower() in LINUX_TYPES

    @property
    def is_fat(self) -> bool:
        return self.type_tag.lower() in FAT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "type": self.type_tag,
            "start_sector": self.start_sector,
            "size_sectors": self.size_sectors,
            "start_bytes": self.start_bytes,
            "size_bytes": self.size_bytes,
        }


@dataclass
class PartitionTable:
    """Parsed partition table of an image."""

    disk_id: str
    partitions: list[Partition]
    label: str | None = None

    @property
    def last(self) -> Partition:
        return self.partitions[-1]

    @property
    def is_boot_root_layout(self) -> bool:
        if len(self.partitions) != 2:
            return False
        boot, root = self.partitions
        return boot.is_fat and root.is_linux

    @property
    def last_is_terminal(self) -> bool:
        """The last entry is also the partition that ends furthest into the image."""
        last = self.last
        return all(p.start_sector < last.start_sector for p in self.partitions[:-1])

    def to_dict(self) -> dict[str, Any]:
        return {
            "disk_id": self.disk_id,
            "label": self.label,
            "partitions": [p.to_dict() for p in self.partitions],
        }


def strip_disk_id(disk_id: str) -> str:
    """Turn an sfdisk label-id into the form used in PARTUUID= values."""
    value = disk_id.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


@dataclass
class LoopBinding:
    """Exposure of an image (or a byte window of it) as a block device."""

    device_path: str
    image: Image
    kind: ImageKind
    offset: int | None = None
    length: int | None = None
    allocated: bool = False
    released: bool = False

    @property
    def is_window(self) -> bool:
        return self.offset is not None or self.length is not None


@dataclass
class MountedPartition:
    """A partition mounted as part of a mount session."""

    partition: Partition
    target: Path
    fstype: str


@dataclass
class ResizeReport:
    """Geometry and outcome of a resize (or a size query)."""

    image_path: str
    kind: ImageKind
    partition_number: int
    partition_start_bytes: int
    partition_size_bytes: int
    minimum_filesystem_bytes: int
    minimum_image_bytes: int
    current_image_bytes: int
    object_bytes: int
    action: str = "report"
    requested_bytes: int | None = None
    target_image_bytes: int | None = None
    target_partition_bytes: int | None = None
    old_disk_id: str | None = None
    new_disk_id: str | None = None
    partuuid_updated: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.action in ("shrink", "grow")

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_path": self.image_path,
            "kind": self.kind.value,
            "partition_number": self.partition_number,
            "partition_start_bytes": self.partition_start_bytes,
            "partition_size_bytes": self.partition_size_bytes,
            "minimum_filesystem_bytes": self.minimum_filesystem_bytes,
            "minimum_image_bytes": self.minimum_image_bytes,
            "current_image_bytes": self.current_image_bytes,
            "object_bytes": self.object_bytes,
            "action": self.action,
            "requested_bytes": self.requested_bytes,
            "target_image_bytes": self.target_image_bytes,
            "target_partition_bytes": self.target_partition_bytes,
            "old_disk_id": self.old_disk_id,
            "new_disk_id": self.new_disk_id,
            "partuuid_updated": self.partuuid_updated,
            "warnings": self.warnings,
        }
