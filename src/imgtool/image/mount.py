"""
Mount sessions.

Mounts the root and boot partitions of a bound image at a scratch directory,
runs caller-supplied work there and always tears everything down again.
"""

from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from imgtool.core.config import MountConfig
from imgtool.core.errors import CleanupError, MountError, ValidationError, WorkError
from imgtool.core.logging import OperationLogger, get_logger
from imgtool.core.models import Image, LoopBinding, MountedPartition, Partition, PartitionTable
from imgtool.image.binder import bind, release
from imgtool.image.inspector import inspect
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

EXIT_FAILURE = 1

Work = Callable[[Path, Sequence[str]], int]


def select_boot_root(table: PartitionTable) -> tuple[Partition, Partition]:
    """Return (boot, root) of a boot+root image, or raise ValidationError."""
    if len(table.partitions) == 1:
        raise ValidationError("Unsupported layout: single-partition images cannot be mounted")
    if not table.is_boot_root_layout:
        types = ", ".join(p.type_tag for p in table.partitions)
        raise ValidationError(
            f"Unsupported layout: expected a FAT boot and a Linux root partition, got {types}"
        )
    boot, root = table.partitions
    return boot, root


class MountSession:
    """Root and boot of one image mounted under a temporary directory."""

    def __init__(
        self,
        image: Image,
        backend: PlatformBackend,
        config: MountConfig | None = None,
    ) -> None:
        self.image = image
        self.backend = backend
        self.config = config or MountConfig()
        self.binding: LoopBinding | None = None
        self.mount_point: Path | None = None
        self.mounted: list[MountedPartition] = []

    def __enter__(self) -> MountSession:
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def open(self) -> Path:
        """Bind, inspect and mount. Tears down whatever was set up on failure."""
        try:
            self.binding = bind(self.image, self.backend, self.config.loop_settle_seconds)
            table = inspect(self.binding.device_path, self.backend)
            boot, root = select_boot_root(table)

            self.mount_point = Path(tempfile.mkdtemp(prefix=self.config.mount_point_prefix))
            self._mount(root, self.mount_point, self.config.root_fstype)

            boot_target = self.mount_point / self.config.boot_directory
            boot_target.mkdir(exist_ok=True)
            self._mount(boot, boot_target, self.config.boot_fstype)
        except BaseException:
            self.close()
            raise

        logger.info(
            "Image mounted",
            image=str(self.image),
            device=self.binding.device_path,
            mount_point=str(self.mount_point),
        )
        return self.mount_point

    def _mount(self, partition: Partition, target: Path, fstype: str) -> None:
        if self.binding is None:
            raise MountError(f"Cannot mount {target}: {self.image} is not bound")
        options = [f"offset={partition.start_bytes}", f"sizelimit={partition.size_bytes}"]
        self.backend.mount(self.binding.device_path, str(target), fstype=fstype, options=options)
        self.mounted.append(MountedPartition(partition=partition, target=target, fstype=fstype))

    def _unmount(self, target: Path) -> bool:
        retries = self.config.unmount_retries
        for attempt in range(1, retries + 1):
            result = self.backend.unmount(str(target), lazy=True, force=True)
            if result.success:
                return True
            if not self.backend.is_mounted(str(target)):
                logger.info("Target already unmounted", target=str(target), error=result.error_text)
                return True
            logger.warning(
                "Unmount failed",
                target=str(target),
                attempt=attempt,
                retries=retries,
                error=result.error_text,
            )
            if attempt < retries:
                time.sleep(self.config.unmount_retry_delay_seconds)

        error = CleanupError(f"Could not unmount {target} after {retries} attempts")
        logger.error(str(error), target=str(target))
        return False

    def close(self) -> bool:
        """Unmount, remove the mount point and release the binding. Never raises."""
        clean = True
        try:
            while self.mounted:
                mounted = self.mounted.pop()
                clean = self._unmount(mounted.target) and clean

            if self.mount_point is not None:
                try:
                    os.rmdir(self.mount_point)
                except OSError as e:
                    clean = False
                    logger.error(
                        "Could not remove mount point",
                        mount_point=str(self.mount_point),
                        error=str(e),
                    )
                self.mount_point = None
        finally:
            if self.binding is not None:
                clean = release(self.binding, self.backend) and clean
                self.binding = None
        return clean


def run_work(work: Work, mount_point: Path, args: Sequence[str]) -> int:
    """Run work and turn its outcome into a result code."""
    try:
        code = work(mount_point, args)
    except WorkError as e:
        logger.warning("Work failed", error=str(e), result_code=e.returncode)
        return e.returncode

    if code:
        logger.warning("Work finished with non-zero result", result_code=code)
    return code


def open_session(
    image: Image,
    work: Work,
    args: Sequence[str],
    backend: PlatformBackend,
    config: MountConfig | None = None,
) -> int:
    """
    Mount an image, run work(mount_point, args) and tear down.

    Returns the work's result code, or 1 if mounting failed before the work
    could run. ValidationError propagates after cleanup.
    """
    with OperationLogger("mount session", logger, image=str(image)) as op:
        try:
            with MountSession(image, backend, config) as session:
                if session.mount_point is None:
                    raise MountError(f"{image} has no mount point")
                code = run_work(work, session.mount_point, args)
        except MountError as e:
            logger.error("Mount failed", image=str(image), error=str(e))
            code = EXIT_FAILURE
        op.update(result_code=code)
    return code
