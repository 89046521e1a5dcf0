"""
Linux output parsers.

Parsers for sfdisk, resize2fs, losetup and blockdev output. Each parser is
validated against fixed sample outputs in the test suite.
"""

from __future__ import annotations

import re
from typing import Any

from imgtool.core.models import Partition, PartitionTable


def parse_sfdisk_dump(output: str) -> dict[str, Any]:
    """
    Parse sfdisk dump output.

    Grammar::

        header    := key ":" value            (label, label-id, device, unit, ...)
        partition := device ":" attr ("," attr)*   (any line holding "start=")
        attr      := key "=" value | flag     (start, size, type, uuid, bootable)

    Example input::

        label: dos
        label-id: 0x1a2b3c4d
        device: /dev/loop0
        unit: sectors

        /dev/loop0p1 : start=        8192, size=      524288, type=c
        /dev/loop0p2 : start=      532480, size=     3072000, type=83
    """
    result: dict[str, Any] = {
        "label": None,
        "label_id": None,
        "device": None,
        "unit": "sectors",
        "partitions": [],
    }

    for line in output.strip().split("\n"):
        line = line.strip()
        if not line:
            continue

        if "start=" in line:
            device, _, attrs_str = line.partition(":")
            attrs: dict[str, str] = {}
            for attr in attrs_str.split(","):
                attr = attr.strip()
                if "=" in attr:
                    key, value = attr.split("=", 1)
                    attrs[key.strip()] = value.strip()
                elif attr:
                    attrs[attr] = "true"
            result["partitions"].append({"device": device.strip(), "attrs": attrs})
        elif line.startswith("label:"):
            result["label"] = line.split(":", 1)[1].strip()
        elif line.startswith("label-id:"):
            result["label_id"] = line.split(":", 1)[1].strip()
        elif line.startswith("device:"):
            result["device"] = line.split(":", 1)[1].strip()
        elif line.startswith("unit:"):
            result["unit"] = line.split(":", 1)[1].strip()

    return result


def build_partition_table(dump: dict[str, Any]) -> PartitionTable:
    """Build a PartitionTable from parsed sfdisk dump data."""
    partitions: list[Partition] = []

    for index, entry in enumerate(dump["partitions"], start=1):
        attrs = entry["attrs"]
        number_match = re.search(r"(\d+)$", entry["device"])
        number = int(number_match.group(1)) if number_match else index
        partitions.append(
            Partition(
                number=number,
                type_tag=attrs.get("type", "").lower(),
                start_sector=int(attrs.get("start", "0")),
                size_sectors=int(attrs.get("size", "0")),
            )
        )

    return PartitionTable(
        disk_id=dump["label_id"] or "",
        partitions=partitions,
        label=dump["label"],
    )


def parse_resize2fs_minimum(output: str) -> int | None:
    """
    Parse the minimum block count printed by ``resize2fs -P``.

    Example input::

        resize2fs 1.46.5 (30-Dec-2021)
        Estimated minimum size of the filesystem: 412345
    """
    match = re.search(r"minimum size of the filesystem:\s*(\d+)", output)
    if not match:
        return None
    return int(match.group(1))


def parse_losetup_find(output: str) -> str | None:
    """Parse the device printed by ``losetup -f``."""
    for line in output.strip().split("\n"):
        line = line.strip()
        if line.startswith("/dev/loop"):
            return line
    return None


def parse_blockdev_size(output: str) -> int | None:
    """Parse the byte count printed by ``blockdev --getsize64``."""
    value = output.strip()
    if not value.isdigit():
        return None
    return int(value)
