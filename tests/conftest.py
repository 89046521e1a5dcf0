"""
Pytest configuration and fixtures for img-tool tests.
"""

import shutil
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from imgtool.core.config import ImgToolConfig, MountConfig
from imgtool.core.errors import BindError, MountError
from imgtool.core.models import SECTOR_SIZE, Partition, PartitionTable
from imgtool.platform.base import CommandResult, PlatformBackend

ROOT_START_SECTOR = 514
ROOT_SIZE_SECTORS = 16384
DISK_ID = "0x1a2b3c4d"


def boot_root_table(
    root_size_sectors: int = ROOT_SIZE_SECTORS,
    disk_id: str = DISK_ID,
    root_type: str = "83",
) -> PartitionTable:
    """Boot partition over sectors [0, 512), root starting at sector 514."""
    return PartitionTable(
        disk_id=disk_id,
        label="dos",
        partitions=[
            Partition(number=1, type_tag="c", start_sector=0, size_sectors=512),
            Partition(
                number=2,
                type_tag=root_type,
                start_sector=ROOT_START_SECTOR,
                size_sectors=root_size_sectors,
            ),
        ],
    )


def image_length(table: PartitionTable) -> int:
    return table.last.end_bytes + SECTOR_SIZE


def write_image(path: Path, length: int, signature: bool = True) -> Path:
    """Create a sparse image file, optionally with an MBR boot signature."""
    with open(path, "wb") as f:
        f.truncate(length)
        if signature:
            f.seek(510)
            f.write(b"\x55\xaa")
    return path


class FakeBackend(PlatformBackend):
    """
    In-memory stand-in for the Linux tools.

    Records every call in `calls` and keeps a loop table, so tests can
    assert on ordering and on bindings left behind.
    """

    def __init__(
        self,
        table: PartitionTable | None = None,
        minimum_blocks: int = 500,
        fsck_code: int = 0,
        capacity: int = 0,
        new_disk_id: str | None = "0x5e6f7a8b",
    ) -> None:
        self.table = table or boot_root_table()
        self.minimum_blocks = minimum_blocks
        self.fsck_code = fsck_code
        self.capacity = capacity
        self.new_disk_id = new_disk_id
        self.admin = True
        self.calls: list[tuple] = []
        self.loops: dict[str, tuple] = {}
        self.mounts: list[tuple] = []
        self.unmount_failures = 0
        self.fail_mount_fstype: str | None = None
        self.fail_attach = False
        self.chroot_code = 0
        self.chroot_calls: list[tuple[str, list[str]]] = []

    @property
    def name(self) -> str:
        return "fake"

    def is_admin(self) -> bool:
        return self.admin

    def required_tools(self) -> list[str]:
        return []

    def run_command(self, command, timeout=300, check=True, capture_output=True):
        self.calls.append(("run", tuple(command)))
        return CommandResult(0, "", "", command)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    # Loop devices

    def find_free_loop(self) -> str:
        index = 0
        while f"/dev/loop{index}" in self.loops:
            index += 1
        return f"/dev/loop{index}"

    def attach_loop(self, device, backing_path, offset=None, length=None) -> None:
        self.calls.append(("attach_loop", device, backing_path, offset, length))
        if self.fail_attach:
            raise BindError(f"Cannot attach {backing_path} to {device}")
        self.loops[device] = (backing_path, offset, length)

    def detach_loop(self, device) -> CommandResult:
        self.calls.append(("detach_loop", device))
        self.loops.pop(device, None)
        return CommandResult(0, "", "", ["losetup", "-d", device])

    def is_loop_attached(self, device) -> bool:
        return device in self.loops

    # Partition tables

    def read_partition_table(self, device) -> PartitionTable:
        self.calls.append(("read_partition_table", device))
        return PartitionTable(
            disk_id=self.table.disk_id,
            partitions=list(self.table.partitions),
            label=self.table.label,
        )

    def replace_partition(self, device, number, start_bytes, end_bytes) -> None:
        self.calls.append(("replace_partition", device, number, start_bytes, end_bytes))
        partitions = [p for p in self.table.partitions if p.number != number]
        partitions.append(
            Partition(
                number=number,
                type_tag="83",
                start_sector=start_bytes // SECTOR_SIZE,
                size_sectors=(end_bytes - start_bytes) // SECTOR_SIZE,
            )
        )
        partitions.sort(key=lambda p: p.number)
        self.table = PartitionTable(
            disk_id=self.new_disk_id or self.table.disk_id,
            partitions=partitions,
            label=self.table.label,
        )

    def device_size(self, device) -> int:
        self.calls.append(("device_size", device))
        return self.capacity

    # Filesystems

    def check_filesystem(self, device) -> CommandResult:
        self.calls.append(("check_filesystem", device))
        return CommandResult(self.fsck_code, "", "", ["e2fsck", "-f", "-y", device])

    def minimum_filesystem_blocks(self, device) -> int:
        self.calls.append(("minimum_filesystem_blocks", device))
        return self.minimum_blocks

    def resize_filesystem(self, device, blocks) -> None:
        self.calls.append(("resize_filesystem", device, blocks))

    # Mounts

    def mount(self, source, target, fstype=None, options=None, bind=False) -> None:
        self.calls.append(("mount", source, target, fstype, tuple(options or ()), bind))
        if fstype is not None and fstype == self.fail_mount_fstype:
            raise MountError(f"Cannot mount {source} at {target}")
        self.mounts.append((source, target, fstype))

    def unmount(self, target, lazy=False, force=False) -> CommandResult:
        self.calls.append(("unmount", target, lazy, force))
        if self.unmount_failures:
            self.unmount_failures -= 1
            return CommandResult(32, "", "target is busy", ["umount", target])

        for entry in self.mounts:
            if entry[1] == target:
                self.mounts.remove(entry)
                # Files written to the root filesystem vanish with it
                if entry[2] == "ext4":
                    for child in Path(target).iterdir():
                        if child.is_dir() and not child.is_symlink():
                            shutil.rmtree(child)
                        else:
                            child.unlink()
                break
        return CommandResult(0, "", "", ["umount", target])

    def is_mounted(self, target) -> bool:
        return any(entry[1] == target for entry in self.mounts)

    # Execution

    def chroot(self, root, command) -> int:
        self.calls.append(("chroot", root, tuple(command)))
        self.chroot_calls.append((root, list(command)))
        return self.chroot_code


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def scratch_tmp(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Make mount points land in a per-test directory."""
    scratch = temp_dir / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def mount_config() -> MountConfig:
    """Mount configuration without settle or retry delays."""
    return MountConfig(loop_settle_seconds=0, unmount_retry_delay_seconds=0)


@pytest.fixture
def image_file(temp_dir: Path) -> Path:
    """Sparse image file matching the default fake partition table."""
    return write_image(temp_dir / "test.img", image_length(boot_root_table()))


@pytest.fixture
def sample_config(temp_dir: Path) -> ImgToolConfig:
    """Create a sample configuration for testing."""
    config = ImgToolConfig(session_directory=temp_dir / "sessions")
    config.logging.log_directory = temp_dir / "logs"
    config.logging.console_enabled = False
    config.mount.loop_settle_seconds = 0
    config.mount.unmount_retry_delay_seconds = 0
    config.ensure_directories()
    return config


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
