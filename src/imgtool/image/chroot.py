"""
Chroot execution inside a mounted image.

Prepares pseudo-filesystems, DNS and (for foreign images) user-mode
emulation, then runs a script or an interactive shell in the image root.
"""

from __future__ import annotations

import os
import platform
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path, PurePosixPath

from imgtool.core.config import ChrootConfig
from imgtool.core.errors import ValidationError
from imgtool.core.logging import OperationLogger, get_logger
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

# e_machine values from the ELF header
ELF_MACHINES = {
    3: "i386",
    8: "mips",
    20: "ppc",
    21: "ppc64",
    40: "arm",
    62: "x86_64",
    183: "aarch64",
    243: "riscv64",
}

HOST_ARCH_ALIASES = {
    "armv6l": "arm",
    "armv7l": "arm",
    "armv8l": "arm",
    "arm64": "aarch64",
    "amd64": "x86_64",
    "i486": "i386",
    "i586": "i386",
    "i686": "i386",
}

_ELF_MASK = (
    r"\xff\xff\xff\xff\xff\xff\xff\x00\xff\xff\xff\xff\xff\xff\xff\xff\xfe\xff\xff\xff"
)

# binfmt_misc magic/mask pairs, as registered by qemu-user-static
BINFMT_MAGIC = {
    "arm": (
        r"\x7fELF\x01\x01\x01\x00\x00\x00\x00\x00\x00\x00\x00\x00\x02\x00\x28\x00",
        _ELF_MASK,
    ),
    "aarch64": (
        r"\x7fELF\x02\x01\x01\x00\x00\x00\x00\x00\x00\x00\x00\x00\x02\x00\xb7\x00",
        _ELF_MASK,
    ),
}

# source, target (relative to root), fstype, options, bind
PSEUDO_FILESYSTEMS: tuple[tuple[str, str, str | None, list[str], bool], ...] = (
    ("proc", "proc", "proc", ["nosuid", "noexec", "nodev"], False),
    ("sysfs", "sys", "sysfs", ["nosuid", "noexec", "nodev"], False),
    ("/dev", "dev", None, ["nosuid"], True),
    ("/dev/pts", "dev/pts", None, ["nosuid", "noexec"], True),
)

PRELOAD_FILE = "etc/ld.so.preload"
PRELOAD_DISABLED_SUFFIX = ".imgtool-disabled"


def host_arch() -> str:
    machine = platform.machine().lower()
    return HOST_ARCH_ALIASES.get(machine, machine)


def read_elf_arch(path: Path) -> str | None:
    """Architecture of an ELF binary, or None if it is not one."""
    try:
        with open(path, "rb") as f:
            header = f.read(20)
    except OSError:
        return None

    if len(header) < 20 or header[:4] != b"\x7fELF":
        return None
    byteorder = "little" if header[5] == 1 else "big"
    return ELF_MACHINES.get(int.from_bytes(header[18:20], byteorder))


def resolve_in_root(root: Path, path: str, max_links: int = 40) -> Path:
    """Follow symlinks of an absolute in-image path without leaving the root."""
    current = PurePosixPath(path)
    for _ in range(max_links):
        host_path = root / current.relative_to("/")
        if not host_path.is_symlink():
            return host_path
        link = PurePosixPath(os.readlink(host_path))
        current = link if link.is_absolute() else current.parent / link
    raise ValidationError(f"Too many levels of symbolic links resolving {path}")


class ChrootExecutor:
    """Runs scripts or shells chrooted into a mounted image."""

    def __init__(self, backend: PlatformBackend, config: ChrootConfig | None = None) -> None:
        self.backend = backend
        self.config = config or ChrootConfig()

    def __call__(self, mount_point: Path, args: Sequence[str]) -> int:
        """Mount-session work: args are [script, script args...] or empty for a shell."""
        if not args:
            return self.run(mount_point)
        script, *script_args = args
        return self.run(mount_point, Path(script), script_args)

    def run(
        self,
        mount_point: Path,
        script: Path | None = None,
        args: Sequence[str] = (),
    ) -> int:
        root = Path(mount_point)
        if script is not None and not script.is_file():
            raise ValidationError(f"Script not found: {script}")

        with OperationLogger(
            "chroot", logger, root=str(root), script=str(script) if script else None
        ) as op:
            self.prepare_emulation(root)
            mounted: list[Path] = []
            try:
                self._mount_pseudo_filesystems(root, mounted)
                self._copy_resolv_conf(root)
                with self._preload_disabled(root):
                    if script is None:
                        code = self._run_shell(root)
                    else:
                        code = self._run_script(root, script, args)
            finally:
                self._unmount_pseudo_filesystems(mounted)
            op.update(result_code=code)
        return code

    # ==================== Emulation ====================

    def target_arch(self, root: Path) -> str | None:
        for candidate in (self.config.script_shell, self.config.interactive_shell, "/bin/ls"):
            try:
                arch = read_elf_arch(resolve_in_root(root, candidate))
            except (ValidationError, ValueError, OSError):
                continue
            if arch:
                return arch
        return None

    def prepare_emulation(self, root: Path) -> None:
        """Register and install a qemu user-mode interpreter for foreign images."""
        target = self.target_arch(root)
        host = host_arch()

        if target is None:
            logger.warning("Could not detect image architecture, assuming native", root=str(root))
            return
        if target == host:
            logger.info("Native architecture, emulation not needed", arch=host)
            return

        emulator = self.config.emulators.get(target)
        if not emulator:
            raise ValidationError(f"No emulator configured for {target} images")
        source = shutil.which(emulator)
        if source is None:
            raise ValidationError(f"{emulator} not found, install qemu-user-static")

        self._register_binfmt(target, source)

        destination = root / "usr" / "bin" / emulator
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        logger.info("Installed emulator", emulator=emulator, host_arch=host, image_arch=target)

    def _register_binfmt(self, arch: str, interpreter: str) -> None:
        binfmt_dir = self.config.binfmt_directory
        entry = binfmt_dir / f"qemu-{arch}"

        if not (binfmt_dir / "register").exists():
            self.backend.mount("binfmt_misc", str(binfmt_dir), fstype="binfmt_misc")

        if entry.exists():
            logger.info("Emulator already registered", entry=str(entry))
            return

        if arch not in BINFMT_MAGIC:
            raise ValidationError(f"No binfmt signature known for {arch}")
        magic, mask = BINFMT_MAGIC[arch]
        registration = f":qemu-{arch}:M::{magic}:{mask}:{interpreter}:F"
        with open(binfmt_dir / "register", "w") as f:
            f.write(registration)
        logger.info("Registered emulator", entry=str(entry), interpreter=interpreter)

    # ==================== Environment ====================

    def _mount_pseudo_filesystems(self, root: Path, mounted: list[Path]) -> None:
        for source, relative, fstype, options, bind in PSEUDO_FILESYSTEMS:
            target = root / relative
            target.mkdir(parents=True, exist_ok=True)
            self.backend.mount(source, str(target), fstype=fstype, options=options, bind=bind)
            mounted.append(target)

    def _unmount_pseudo_filesystems(self, mounted: list[Path]) -> None:
        while mounted:
            target = mounted.pop()
            result = self.backend.unmount(str(target), lazy=True)
            if not result.success:
                logger.warning("Could not unmount", target=str(target), error=result.error_text)

    def _copy_resolv_conf(self, root: Path) -> None:
        source = self.config.resolv_conf
        if not source.exists():
            logger.warning("Host resolver configuration missing", path=str(source))
            return

        target = root / "etc" / "resolv.conf"
        if target.is_symlink():
            target.unlink()
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)

    @contextmanager
    def _preload_disabled(self, root: Path) -> Iterator[None]:
        preload = root / PRELOAD_FILE
        disabled = preload.with_name(preload.name + PRELOAD_DISABLED_SUFFIX)
        moved = False
        if preload.exists():
            preload.rename(disabled)
            moved = True
            logger.debug("Disabled preload configuration", path=str(preload))
        try:
            yield
        finally:
            if moved:
                disabled.rename(preload)
                logger.debug("Restored preload configuration", path=str(preload))

    # ==================== Execution ====================

    def _run_script(self, root: Path, script: Path, args: Sequence[str]) -> int:
        script_dir = root / self.config.script_directory
        script_dir.mkdir(parents=True, exist_ok=True)
        # Unique name so a file already in the image is never replaced
        fd, name = tempfile.mkstemp(prefix="imgtool-", suffix=f"-{script.name}", dir=script_dir)
        os.close(fd)
        copied = Path(name)

        try:
            shutil.copy2(script, copied)
            in_image = f"/{self.config.script_directory.strip('/')}/{copied.name}"
            return self.backend.chroot(str(root), [self.config.script_shell, in_image, *args])
        finally:
            copied.unlink(missing_ok=True)

    def _run_shell(self, root: Path) -> int:
        shell = self.config.interactive_shell
        if not resolve_in_root(root, shell).exists():
            shell = self.config.script_shell
        logger.info("Starting interactive shell", root=str(root), shell=shell)
        return self.backend.chroot(str(root), [shell])
