"""
img-tool Platform Abstraction Layer.

Loop devices, partition tables and chroot are Linux-only.
"""

from __future__ import annotations

import platform

from imgtool.platform.base import CommandResult, PlatformBackend


def get_platform_backend(fsck_timeout: int = 3600, resize_timeout: int = 7200) -> PlatformBackend:
    """Get the platform backend for the current OS."""
    system = platform.system().lower()

    if system == "linux":
        from imgtool.platform.linux import LinuxBackend

        return LinuxBackend(fsck_timeout=fsck_timeout, resize_timeout=resize_timeout)
    raise RuntimeError(f"Unsupported platform: {system}")


__all__ = [
    "CommandResult",
    "PlatformBackend",
    "get_platform_backend",
]
