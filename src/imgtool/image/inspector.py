"""
Partition table inspection.
"""

from __future__ import annotations

from pathlib import Path

from imgtool.core.errors import ValidationError
from imgtool.core.logging import get_logger
from imgtool.core.models import PartitionTable
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

MAX_PARTITIONS = 2


def inspect(device: str, backend: PlatformBackend) -> PartitionTable:
    """Read the partition table of a bound image; it must hold one or two partitions."""
    table = backend.read_partition_table(device)
    count = len(table.partitions)

    if count == 0 or count > MAX_PARTITIONS:
        raise ValidationError(
            f"Unsupported layout on {device}: expected 1 or 2 partitions, found {count}"
        )

    logger.debug(
        "Partition table",
        device=device,
        disk_id=table.disk_id,
        partitions=[p.to_dict() for p in table.partitions],
    )
    return table


def read_disk_id(path: str | Path, backend: PlatformBackend) -> str:
    """Read only the disk identifier; works on an unbound image file."""
    return backend.read_partition_table(str(path)).disk_id
