"""
Tests for imgtool.image.binder module.
"""

from pathlib import Path

import pytest

from conftest import FakeBackend, write_image
from imgtool.core.errors import BindError, ValidationError
from imgtool.core.models import Image, ImageKind
from imgtool.image.binder import (
    BindingStack,
    bind,
    bind_window,
    bound,
    has_boot_signature,
    release,
    unbind,
)
from imgtool.platform.base import CommandResult


class TestBootSignature:
    """Tests for has_boot_signature."""

    def test_signed(self, image_file: Path) -> None:
        assert has_boot_signature(Image(image_file)) is True

    def test_unsigned(self, temp_dir: Path) -> None:
        path = write_image(temp_dir / "blank.img", 4096, signature=False)
        assert has_boot_signature(Image(path)) is False

    def test_too_short(self, temp_dir: Path) -> None:
        path = temp_dir / "short.img"
        path.write_bytes(b"\x00" * 100)
        assert has_boot_signature(Image(path)) is False


class TestBind:
    """Tests for bind and unbind."""

    def test_bind_file(self, image_file: Path, fake_backend: FakeBackend) -> None:
        binding = bind(Image(image_file), fake_backend, settle_seconds=0)

        assert binding.device_path == "/dev/loop0"
        assert binding.kind == ImageKind.FILE
        assert binding.allocated is True
        assert fake_backend.loops["/dev/loop0"] == (str(image_file), None, None)

    def test_bind_rejects_unsigned_file(self, temp_dir: Path, fake_backend: FakeBackend) -> None:
        path = write_image(temp_dir / "blank.img", 4096, signature=False)

        with pytest.raises(ValidationError, match="boot sector"):
            bind(Image(path), fake_backend, settle_seconds=0)
        assert fake_backend.loops == {}

    def test_bind_block_device_is_identity(
        self, image_file: Path, fake_backend: FakeBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(Image, "kind", property(lambda self: ImageKind.BLOCK_DEVICE))

        binding = bind(Image(image_file), fake_backend, settle_seconds=0)

        assert binding.device_path == str(image_file)
        assert binding.allocated is False
        assert fake_backend.loops == {}
        unbind(binding, fake_backend)
        assert "detach_loop" not in fake_backend.call_names()

    def test_unbind_is_idempotent(self, image_file: Path, fake_backend: FakeBackend) -> None:
        binding = bind(Image(image_file), fake_backend, settle_seconds=0)

        unbind(binding, fake_backend)
        unbind(binding, fake_backend)

        assert binding.released is True
        assert fake_backend.call_names().count("detach_loop") == 1
        assert fake_backend.loops == {}

    def test_unbind_failure_raises_when_still_attached(
        self, image_file: Path, fake_backend: FakeBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        binding = bind(Image(image_file), fake_backend, settle_seconds=0)
        monkeypatch.setattr(
            fake_backend, "detach_loop", lambda device: CommandResult(1, "", "busy", [])
        )

        with pytest.raises(BindError, match="busy"):
            unbind(binding, fake_backend)
        assert binding.released is False
        assert release(binding, fake_backend) is False

    def test_bind_window(self, image_file: Path, fake_backend: FakeBackend) -> None:
        parent = bind(Image(image_file), fake_backend, settle_seconds=0)
        window = bind_window(parent, 514 * 512, 8192, fake_backend, settle_seconds=0)

        assert window.device_path == "/dev/loop1"
        assert window.is_window
        assert fake_backend.loops["/dev/loop1"] == ("/dev/loop0", 514 * 512, 8192)

    def test_bound_context_releases(self, image_file: Path, fake_backend: FakeBackend) -> None:
        with bound(Image(image_file), fake_backend, settle_seconds=0) as binding:
            assert binding.device_path in fake_backend.loops
        assert fake_backend.loops == {}

    def test_bound_context_releases_on_error(
        self, image_file: Path, fake_backend: FakeBackend
    ) -> None:
        with pytest.raises(RuntimeError):
            with bound(Image(image_file), fake_backend, settle_seconds=0):
                raise RuntimeError("boom")
        assert fake_backend.loops == {}


class TestBindingStack:
    """Tests for BindingStack."""

    def test_single_whole_image_binding(self, image_file: Path, fake_backend: FakeBackend) -> None:
        stack = BindingStack(fake_backend, settle_seconds=0)
        stack.bind(Image(image_file))

        with pytest.raises(BindError, match="already bound"):
            stack.bind(Image(image_file))

    def test_release_all_newest_first(self, image_file: Path, fake_backend: FakeBackend) -> None:
        stack = BindingStack(fake_backend, settle_seconds=0)
        disk = stack.bind(Image(image_file))
        stack.bind_window(disk, 514 * 512, 8192)

        assert len(stack) == 2
        assert stack.release_all() is True

        detached = [call[1] for call in fake_backend.calls if call[0] == "detach_loop"]
        assert detached == ["/dev/loop1", "/dev/loop0"]
        assert len(stack) == 0
        assert fake_backend.loops == {}

    def test_rebind_after_unbind(self, image_file: Path, fake_backend: FakeBackend) -> None:
        stack = BindingStack(fake_backend, settle_seconds=0)
        disk = stack.bind(Image(image_file))
        stack.unbind(disk)

        again = stack.bind(Image(image_file))

        assert again.device_path == "/dev/loop0"
        assert len(stack) == 1
        stack.release_all()

    def test_attach_failure_leaves_nothing(
        self, image_file: Path, fake_backend: FakeBackend
    ) -> None:
        fake_backend.fail_attach = True
        stack = BindingStack(fake_backend, settle_seconds=0)

        with pytest.raises(BindError):
            stack.bind(Image(image_file))
        assert len(stack) == 0
