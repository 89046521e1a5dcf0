"""
Image resizing.

Shrinks or grows an image together with its trailing ext filesystem. The
order of the steps is what keeps data safe:

- shrink: filesystem, then partition table, then backing file
- grow:   backing file, then partition table, then filesystem

There is no rollback; every constraint is checked before the first
destructive step.
"""

from __future__ import annotations

import os

from imgtool.core.config import MountConfig, ResizeConfig
from imgtool.core.errors import ResizeConstraintError, ValidationError
from imgtool.core.logging import OperationLogger, get_logger
from imgtool.core.models import (
    FS_BLOCK_SIZE,
    SECTOR_SIZE,
    Image,
    ImageKind,
    LoopBinding,
    Partition,
    ResizeReport,
    round_up,
)
from imgtool.image.binder import BindingStack
from imgtool.image.inspector import inspect, read_disk_id
from imgtool.image.mount import open_session
from imgtool.image.partuuid import PartUuidFixer
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

# e2fsck exit codes from 4 up mean errors were left uncorrected
FSCK_UNCORRECTED = 4


def plan_target(
    requested_bytes: int,
    partition_start: int,
    minimum_filesystem_bytes: int,
    capacity: int | None = None,
) -> tuple[int, int]:
    """
    Compute the effective image length and partition length for a request.

    The image length is aligned to 512 bytes (loop devices) and the partition
    length to 4096 bytes (filesystem blocks); one trailing sector follows the
    partition. With a `capacity` (block device backing) the partition is
    shrunk block by block until the image fits.

    Returns (target_image_bytes, partition_bytes).
    """
    target = round_up(requested_bytes, SECTOR_SIZE)
    partition_bytes = round_up(target - partition_start - SECTOR_SIZE, FS_BLOCK_SIZE)
    target = partition_start + partition_bytes + SECTOR_SIZE

    if capacity is not None:
        while target > capacity:
            partition_bytes -= FS_BLOCK_SIZE
            target = partition_start + partition_bytes + SECTOR_SIZE
            if partition_bytes < minimum_filesystem_bytes:
                raise ResizeConstraintError(
                    f"Device capacity {capacity} cannot hold the filesystem "
                    f"(minimum {minimum_filesystem_bytes} bytes)"
                )

    return target, partition_bytes


class ResizeEngine:
    """Resizes an image and its last partition."""

    def __init__(
        self,
        backend: PlatformBackend,
        mount_config: MountConfig | None = None,
        config: ResizeConfig | None = None,
    ) -> None:
        self.backend = backend
        self.mount_config = mount_config or MountConfig()
        self.config = config or ResizeConfig()

    def resize(self, image: Image, new_size: int | None = None) -> ResizeReport:
        """
        Report geometry (no `new_size`) or resize the image to `new_size` bytes.

        Every loop binding is released before returning, on all paths.
        """
        stack = BindingStack(self.backend, self.mount_config.loop_settle_seconds)

        with OperationLogger("resize", logger, image=str(image), requested_bytes=new_size) as op:
            try:
                report = self._resize(image, new_size, stack)
                if report.changed:
                    stack.release_all()
                    self._propagate_disk_id(image, report)
            finally:
                stack.release_all()
            op.update(action=report.action, target_image_bytes=report.target_image_bytes)

        return report

    def _resize(self, image: Image, new_size: int | None, stack: BindingStack) -> ResizeReport:
        kind = image.kind
        disk = stack.bind(image)
        table = inspect(disk.device_path, self.backend)

        partition = table.last
        if not partition.is_linux or not table.last_is_terminal:
            raise ValidationError(
                f"Partition {partition.number} (type {partition.type_tag}) is not a "
                "Linux partition at the end of the table"
            )
        # Block devices measure their length from the table, so only files can have a tail
        if kind == ImageKind.FILE and partition.end_bytes + SECTOR_SIZE < image.size_bytes:
            raise ValidationError(
                f"Partition {partition.number} ends at {partition.end_bytes} but {image} is "
                f"{image.size_bytes} bytes long; the last partition must end the image"
            )

        start = partition.start_bytes
        part = stack.bind_window(disk, start, partition.size_bytes)
        minimum_fs = self._minimum_filesystem_bytes(part.device_path)
        minimum_image = start + minimum_fs + SECTOR_SIZE

        if kind == ImageKind.FILE:
            object_bytes = image.allocated_bytes
            current = image.size_bytes
        else:
            object_bytes = self.backend.device_size(str(image.path))
            current = partition.end_bytes + SECTOR_SIZE

        report = ResizeReport(
            image_path=str(image.path),
            kind=kind,
            partition_number=partition.number,
            partition_start_bytes=start,
            partition_size_bytes=partition.size_bytes,
            minimum_filesystem_bytes=minimum_fs,
            minimum_image_bytes=minimum_image,
            current_image_bytes=current,
            object_bytes=object_bytes,
            old_disk_id=table.disk_id,
        )
        logger.info("Image geometry", **report.to_dict())

        if new_size is None:
            return report

        report.requested_bytes = new_size
        capacity = object_bytes if kind == ImageKind.BLOCK_DEVICE else None
        target, partition_bytes = plan_target(new_size, start, minimum_fs, capacity)

        if target < minimum_image:
            raise ResizeConstraintError(
                f"Requested size {target} is below the minimum image size {minimum_image}"
            )
        if round_up(new_size, SECTOR_SIZE) == current or target == current:
            report.action = "noop"
            report.target_image_bytes = current
            report.target_partition_bytes = partition.size_bytes
            logger.info("Image already has the requested size", size=current)
            return report
        if capacity is not None and target > capacity:
            raise ResizeConstraintError(
                f"Requested size {target} exceeds the device capacity {capacity}"
            )

        report.target_image_bytes = target
        report.target_partition_bytes = partition_bytes

        if target < current:
            report.action = "shrink"
            self._shrink(image, partition, partition_bytes, stack, disk, part)
        else:
            report.action = "grow"
            self._grow(image, partition, partition_bytes, target, stack, disk, part)

        return report

    def _minimum_filesystem_bytes(self, device: str) -> int:
        result = self.backend.check_filesystem(device)
        if result.returncode < 0 or result.returncode >= FSCK_UNCORRECTED:
            raise ValidationError(
                f"Filesystem check failed on {device} (exit {result.returncode}), "
                "filesystem may be corrupt"
            )
        return self.backend.minimum_filesystem_blocks(device) * FS_BLOCK_SIZE

    def _shrink(
        self,
        image: Image,
        partition: Partition,
        partition_bytes: int,
        stack: BindingStack,
        disk: LoopBinding,
        part: LoopBinding,
    ) -> None:
        start = partition.start_bytes
        new_end = start + partition_bytes
        logger.info("Shrinking filesystem", device=part.device_path, bytes=partition_bytes)
        self.backend.resize_filesystem(part.device_path, partition_bytes // FS_BLOCK_SIZE)

        stack.unbind(part)
        stack.unbind(disk)
        disk = stack.bind(image)
        logger.info("Rewriting partition table", partition=partition.number, end=new_end)
        self.backend.replace_partition(disk.device_path, partition.number, start, new_end)

        if image.kind == ImageKind.FILE:
            stack.unbind(disk)
            os.truncate(image.path, new_end + SECTOR_SIZE)
            logger.info("Truncated image file", size=new_end + SECTOR_SIZE)

    def _grow(
        self,
        image: Image,
        partition: Partition,
        partition_bytes: int,
        target: int,
        stack: BindingStack,
        disk: LoopBinding,
        part: LoopBinding,
    ) -> None:
        start = partition.start_bytes
        new_end = start + partition_bytes

        stack.unbind(part)
        stack.unbind(disk)
        if image.kind == ImageKind.FILE:
            os.truncate(image.path, target)
            logger.info("Extended image file", size=target)

        disk = stack.bind(image)
        logger.info("Rewriting partition table", partition=partition.number, end=new_end)
        self.backend.replace_partition(disk.device_path, partition.number, start, new_end)

        part = stack.bind_window(disk, start, partition_bytes)
        logger.info("Growing filesystem", device=part.device_path, bytes=partition_bytes)
        self.backend.resize_filesystem(part.device_path, partition_bytes // FS_BLOCK_SIZE)

    def _propagate_disk_id(self, image: Image, report: ResizeReport) -> None:
        """Best effort: failures are logged so the final release still runs."""
        if not self.config.rewrite_partuuid or not report.old_disk_id:
            return

        try:
            report.new_disk_id = read_disk_id(image.path, self.backend)
            code = open_session(
                image,
                PartUuidFixer(self.backend),
                (str(image.path), report.old_disk_id),
                self.backend,
                self.mount_config,
            )
            report.partuuid_updated = code == 0
        except Exception as e:
            logger.warning("Could not update PARTUUID references", error=str(e))
            report.warnings.append(f"PARTUUID references not updated: {e}")
