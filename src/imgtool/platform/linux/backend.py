"""
Linux Platform Backend Implementation.

Implements image operations using standard Linux tools.
"""

from __future__ import annotations

import os
import subprocess
import time

import psutil

from imgtool.core.errors import BindError, ImgToolError, MountError, ValidationError
from imgtool.core.logging import get_logger
from imgtool.core.models import FS_BLOCK_SIZE, PartitionTable
from imgtool.platform.base import CommandResult, PlatformBackend
from imgtool.platform.linux.parsers import (
    build_partition_table,
    parse_blockdev_size,
    parse_losetup_find,
    parse_resize2fs_minimum,
    parse_sfdisk_dump,
)

logger = get_logger(__name__)


class LinuxBackend(PlatformBackend):
    """Linux implementation of image operations."""

    # Tool paths (can be overridden for testing)
    LOSETUP = "losetup"
    SFDISK = "sfdisk"
    PARTED = "parted"
    BLOCKDEV = "blockdev"
    MOUNT = "mount"
    UMOUNT = "umount"
    CHROOT = "chroot"

    # Filesystem tools
    E2FSCK = "e2fsck"
    RESIZE2FS = "resize2fs"

    def __init__(self, fsck_timeout: int = 3600, resize_timeout: int = 7200) -> None:
        self.fsck_timeout = fsck_timeout
        self.resize_timeout = resize_timeout

    @property
    def name(self) -> str:
        return "linux"

    def is_admin(self) -> bool:
        return os.geteuid() == 0

    def required_tools(self) -> list[str]:
        return [
            self.LOSETUP,
            self.SFDISK,
            self.PARTED,
            self.BLOCKDEV,
            self.MOUNT,
            self.UMOUNT,
            self.CHROOT,
            self.E2FSCK,
            self.RESIZE2FS,
        ]

    def run_command(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        capture_output: bool = True,
    ) -> CommandResult:
        """Run a system command."""
        logger.debug("Running command", command=command)
        start_time = time.time()

        try:
            result = subprocess.run(
                command,
                capture_output=capture_output,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                command=command,
                duration_seconds=timeout,
            )
        except OSError as e:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

        cmd_result = CommandResult(
            returncode=result.returncode,
            stdout=result.stdout if capture_output else "",
            stderr=result.stderr if capture_output else "",
            command=command,
            duration_seconds=time.time() - start_time,
        )

        if check and result.returncode != 0:
            logger.warning(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr[:500] if result.stderr else "",
            )

        return cmd_result

    # ==================== Loop Devices ====================

    def find_free_loop(self) -> str:
        result = self.run_command([self.LOSETUP, "-f"])
        device = parse_losetup_find(result.stdout) if result.success else None
        if device is None:
            raise BindError(f"No free loop device: {result.error_text}")
        return device

    def attach_loop(
        self,
        device: str,
        backing_path: str,
        offset: int | None = None,
        length: int | None = None,
    ) -> None:
        cmd = [self.LOSETUP]
        if offset is not None:
            cmd.extend(["-o", str(offset)])
        if length is not None:
            cmd.extend(["--sizelimit", str(length)])
        cmd.extend([device, backing_path])

        result = self.run_command(cmd)
        if not result.success:
            raise BindError(f"Cannot attach {backing_path} to {device}: {result.error_text}")

    def detach_loop(self, device: str) -> CommandResult:
        return self.run_command([self.LOSETUP, "-d", device])

    def is_loop_attached(self, device: str) -> bool:
        return self.run_command([self.LOSETUP, device], check=False).success

    # ==================== Partition Tables ====================

    def read_partition_table(self, device: str) -> PartitionTable:
        result = self.run_command([self.SFDISK, "--dump", device])
        if not result.success:
            raise ValidationError(f"Cannot read partition table of {device}: {result.error_text}")
        return build_partition_table(parse_sfdisk_dump(result.stdout))

    def replace_partition(
        self,
        device: str,
        number: int,
        start_bytes: int,
        end_bytes: int,
    ) -> None:
        # parted treats the end of a byte range as inclusive
        result = self.run_command(
            [
                self.PARTED,
                "-s",
                device,
                "unit",
                "B",
                "rm",
                str(number),
                "mkpart",
                "primary",
                "ext4",
                f"{start_bytes}B",
                f"{end_bytes - 1}B",
            ]
        )
        if not result.success:
            raise ImgToolError(
                f"parted failed to rewrite partition {number} on {device}: {result.error_text}"
            )

    def device_size(self, device: str) -> int:
        result = self.run_command([self.BLOCKDEV, "--getsize64", device])
        size = parse_blockdev_size(result.stdout) if result.success else None
        if size is None:
            raise ValidationError(f"Cannot determine size of {device}: {result.error_text}")
        return size

    # ==================== Filesystems ====================

    def check_filesystem(self, device: str) -> CommandResult:
        # e2fsck exit codes 1 and 2 mean errors were corrected
        return self.run_command(
            [self.E2FSCK, "-f", "-y", device],
            timeout=self.fsck_timeout,
            check=False,
        )

    def minimum_filesystem_blocks(self, device: str) -> int:
        result = self.run_command([self.RESIZE2FS, "-P", device], timeout=self.fsck_timeout)
        blocks = parse_resize2fs_minimum(result.stdout + result.stderr)
        if not result.success or blocks is None:
            raise ValidationError(
                f"Cannot estimate minimum filesystem size of {device}: {result.error_text}"
            )
        return blocks

    def resize_filesystem(self, device: str, blocks: int) -> None:
        size_arg = f"{blocks * FS_BLOCK_SIZE // 1024}K"
        result = self.run_command(
            [self.RESIZE2FS, device, size_arg],
            timeout=self.resize_timeout,
        )
        if not result.success:
            raise ImgToolError(f"resize2fs failed on {device}: {result.error_text}")

    # ==================== Mounts ====================

    def mount(
        self,
        source: str,
        target: str,
        fstype: str | None = None,
        options: list[str] | None = None,
        bind: bool = False,
    ) -> None:
        cmd = [self.MOUNT]
        if bind:
            cmd.append("--bind")
        if fstype:
            cmd.extend(["-t", fstype])
        if options:
            cmd.extend(["-o", ",".join(options)])
        cmd.extend([source, target])

        result = self.run_command(cmd)
        if not result.success:
            raise MountError(f"Cannot mount {source} at {target}: {result.error_text}")

    def unmount(self, target: str, lazy: bool = False, force: bool = False) -> CommandResult:
        cmd = [self.UMOUNT]
        if lazy:
            cmd.append("-l")
        if force:
            cmd.append("-f")
        cmd.append(target)
        return self.run_command(cmd)

    def is_mounted(self, target: str) -> bool:
        target = os.path.realpath(target)
        return any(
            os.path.realpath(p.mountpoint) == target
            for p in psutil.disk_partitions(all=True)
        )

    # ==================== Execution ====================

    def chroot(self, root: str, command: list[str]) -> int:
        cmd = [self.CHROOT, root, *command]
        logger.debug("Running command", command=cmd)
        try:
            return subprocess.run(cmd).returncode
        except OSError as e:
            logger.error("Cannot start chroot", root=root, error=str(e))
            return 127
