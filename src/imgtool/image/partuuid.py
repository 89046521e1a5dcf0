"""
PARTUUID propagation.

Rewriting a partition table may regenerate the disk identifier. The root
filesystem locates itself through PARTUUID=<disk id>-<n> references in
fstab and the kernel command line, so those are rewritten to match.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from imgtool.core.logging import get_logger
from imgtool.core.models import Image, strip_disk_id
from imgtool.image.inspector import read_disk_id
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

PERSISTED_FILES = ("etc/fstab", "boot/cmdline.txt")


class PartUuidFixer:
    """Mount-session work replacing an old disk identifier with the current one."""

    def __init__(self, backend: PlatformBackend) -> None:
        self.backend = backend

    def __call__(self, mount_point: Path, args: Sequence[str]) -> int:
        image_path, old_id = args
        self.rewrite(mount_point, Image(Path(image_path)), old_id)
        return 0

    def rewrite(self, mount_point: Path, image: Image, old_id: str) -> int:
        """Returns the number of substitutions made."""
        old = strip_disk_id(old_id)
        new = strip_disk_id(read_disk_id(image.path, self.backend))

        if not old or old == new:
            logger.info("Disk identifier unchanged", disk_id=new)
            return 0

        total = 0
        for relative in PERSISTED_FILES:
            path = Path(mount_point) / relative
            if not path.is_file():
                logger.warning("File not found, skipping", path=str(path))
                continue

            text = path.read_text()
            count = text.count(old)
            if count:
                path.write_text(text.replace(old, new))
            total += count
            logger.info("Updated disk identifier", path=relative, old=old, new=new, count=count)

        return total
