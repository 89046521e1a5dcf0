"""
img-tool Platform Backend Base.

Defines the interface to the external utilities the image pipeline drives:
loop devices, partition tables, ext filesystems, mounts and chroot.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imgtool.core.models import PartitionTable


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return (self.stderr or self.stdout).strip()

    def __repr__(self) -> str:
        cmd = self.command if isinstance(self.command, str) else " ".join(self.command)
        return f"CommandResult(rc={self.returncode}, cmd='{cmd[:50]}...')"


class PlatformBackend(ABC):
    """Abstract base class for the tools behind image operations."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name (e.g., 'linux')."""

    @abstractmethod
    def is_admin(self) -> bool:
        """Check if running with root privileges."""

    @abstractmethod
    def required_tools(self) -> list[str]:
        """Names of every external tool used by the backend."""

    @abstractmethod
    def run_command(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        capture_output: bool = True,
    ) -> CommandResult:
        """Run a system command."""

    # ==================== Loop Devices ====================

    @abstractmethod
    def find_free_loop(self) -> str:
        """Return the next unused loop device. Raises BindError."""

    @abstractmethod
    def attach_loop(
        self,
        device: str,
        backing_path: str,
        offset: int | None = None,
        length: int | None = None,
    ) -> None:
        """Attach a file (or byte window of it) to a loop device. Raises BindError."""

    @abstractmethod
    def detach_loop(self, device: str) -> CommandResult:
        """Detach a loop device."""

    @abstractmethod
    def is_loop_attached(self, device: str) -> bool:
        """Whether a loop device currently has a backing file."""

    # ==================== Partition Tables ====================

    @abstractmethod
    def read_partition_table(self, device: str) -> PartitionTable:
        """Read the partition table of a device or image file. Raises ValidationError."""

    @abstractmethod
    def replace_partition(
        self,
        device: str,
        number: int,
        start_bytes: int,
        end_bytes: int,
    ) -> None:
        """Delete partition `number` and recreate it over [start_bytes, end_bytes)."""

    @abstractmethod
    def device_size(self, device: str) -> int:
        """Capacity of a block device in bytes."""

    # ==================== Filesystems ====================

    @abstractmethod
    def check_filesystem(self, device: str) -> CommandResult:
        """Check and repair an ext filesystem."""

    @abstractmethod
    def minimum_filesystem_blocks(self, device: str) -> int:
        """Estimated minimum size of an ext filesystem in 4096-byte blocks."""

    @abstractmethod
    def resize_filesystem(self, device: str, blocks: int) -> None:
        """Resize an ext filesystem to `blocks` 4096-byte blocks."""

    # ==================== Mounts ====================

    @abstractmethod
    def mount(
        self,
        source: str,
        target: str,
        fstype: str | None = None,
        options: list[str] | None = None,
        bind: bool = False,
    ) -> None:
        """Mount a filesystem. Raises MountError."""

    @abstractmethod
    def unmount(self, target: str, lazy: bool = False, force: bool = False) -> CommandResult:
        """Unmount a filesystem."""

    @abstractmethod
    def is_mounted(self, target: str) -> bool:
        """Whether `target` is currently a mount point."""

    # ==================== Execution ====================

    @abstractmethod
    def chroot(self, root: str, command: list[str]) -> int:
        """Run a command inside `root` with inherited stdio. Returns its exit code."""
