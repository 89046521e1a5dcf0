"""
img-tool Linux Platform Backend.

Implements image operations using standard Linux tools:
- losetup for loop bindings
- sfdisk/parted for partition tables
- e2fsck, resize2fs for ext filesystems
- mount, umount, chroot for mount sessions
"""

from imgtool.platform.linux.backend import LinuxBackend
from imgtool.platform.linux.parsers import (
    build_partition_table,
    parse_resize2fs_minimum,
    parse_sfdisk_dump,
)

__all__ = [
    "LinuxBackend",
    "build_partition_table",
    "parse_resize2fs_minimum",
    "parse_sfdisk_dump",
]
