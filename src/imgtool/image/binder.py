"""
Block device binding.

Exposes a file-backed image as a loop device, or uses a block device image
as is. Every binding is released exactly once; releasing again is a no-op.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from imgtool.core.errors import BindError, ValidationError
from imgtool.core.logging import get_logger
from imgtool.core.models import Image, ImageKind, LoopBinding
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

BOOT_SIGNATURE = b"\x55\xaa"
BOOT_SIGNATURE_OFFSET = 510


def has_boot_signature(image: Image) -> bool:
    """Whether the first sector ends with the 0x55AA boot signature."""
    try:
        with open(image.path, "rb") as f:
            f.seek(BOOT_SIGNATURE_OFFSET)
            return f.read(len(BOOT_SIGNATURE)) == BOOT_SIGNATURE
    except OSError as e:
        raise ValidationError(f"Cannot read {image}: {e}") from e


def _attach(
    backend: PlatformBackend,
    backing_path: str,
    offset: int | None,
    length: int | None,
    settle_seconds: float,
) -> str:
    device = backend.find_free_loop()
    backend.attach_loop(device, backing_path, offset=offset, length=length)
    if settle_seconds > 0:
        time.sleep(settle_seconds)
    return device


def bind(image: Image, backend: PlatformBackend, settle_seconds: float = 1.0) -> LoopBinding:
    """Bind a whole image to a block device."""
    kind = image.kind

    if kind == ImageKind.BLOCK_DEVICE:
        logger.debug("Image is a block device, no loop device needed", image=str(image))
        return LoopBinding(device_path=str(image.path), image=image, kind=kind)

    if not has_boot_signature(image):
        raise ValidationError(f"{image} does not start with a valid boot sector")

    device = _attach(backend, str(image.path), None, None, settle_seconds)
    logger.info("Attached loop device", image=str(image), device=device)
    return LoopBinding(device_path=device, image=image, kind=kind, allocated=True)


def bind_window(
    parent: LoopBinding,
    offset: int,
    length: int,
    backend: PlatformBackend,
    settle_seconds: float = 1.0,
) -> LoopBinding:
    """Bind a byte window (a partition) of an already bound image."""
    device = _attach(backend, parent.device_path, offset, length, settle_seconds)
    logger.info(
        "Attached partition window",
        parent=parent.device_path,
        device=device,
        offset=offset,
        length=length,
    )
    return LoopBinding(
        device_path=device,
        image=parent.image,
        kind=parent.kind,
        offset=offset,
        length=length,
        allocated=True,
    )


def unbind(binding: LoopBinding, backend: PlatformBackend) -> None:
    """Detach the loop device of a binding. Raises BindError if it stays attached."""
    if binding.released or not binding.allocated:
        binding.released = True
        return

    result = backend.detach_loop(binding.device_path)
    if not result.success and backend.is_loop_attached(binding.device_path):
        raise BindError(f"Cannot detach {binding.device_path}: {result.error_text}")

    binding.released = True
    logger.info("Detached loop device", device=binding.device_path, image=str(binding.image))


def release(binding: LoopBinding, backend: PlatformBackend) -> bool:
    """Unbind for teardown paths: failures are logged, never raised."""
    try:
        unbind(binding, backend)
    except BindError as e:
        logger.error("Loop device left attached", device=binding.device_path, error=str(e))
        return False
    return True


@contextmanager
def bound(
    image: Image, backend: PlatformBackend, settle_seconds: float = 1.0
) -> Iterator[LoopBinding]:
    """Bind an image for the duration of a with-block."""
    binding = bind(image, backend, settle_seconds)
    try:
        yield binding
    finally:
        release(binding, backend)


class BindingStack:
    """Outstanding bindings of one operation, released newest first."""

    def __init__(self, backend: PlatformBackend, settle_seconds: float = 1.0) -> None:
        self.backend = backend
        self.settle_seconds = settle_seconds
        self._bindings: list[LoopBinding] = []

    def bind(self, image: Image) -> LoopBinding:
        if any(not b.is_window for b in self._bindings):
            raise BindError(f"{image} is already bound")
        binding = bind(image, self.backend, self.settle_seconds)
        self._bindings.append(binding)
        return binding

    def bind_window(self, parent: LoopBinding, offset: int, length: int) -> LoopBinding:
        binding = bind_window(parent, offset, length, self.backend, self.settle_seconds)
        self._bindings.append(binding)
        return binding

    def unbind(self, binding: LoopBinding) -> None:
        unbind(binding, self.backend)
        self._bindings.remove(binding)

    def release_all(self) -> bool:
        clean = True
        while self._bindings:
            clean = release(self._bindings.pop(), self.backend) and clean
        return clean

    def __len__(self) -> int:
        return len(self._bindings)
