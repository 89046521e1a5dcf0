"""
Tests for imgtool.image.transfer.
"""

import io
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from imgtool.core.config import LoadConfig
from imgtool.core.errors import ImgToolError, ValidationError, WorkError
from imgtool.image.transfer import copy_into, download, download_image, extract_image


def make_zip(path: Path, members: dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return path


def fake_response(body: bytes, length: bool = True) -> MagicMock:
    stream = io.BytesIO(body)
    response = MagicMock()
    response.read.side_effect = stream.read
    response.headers = {"Content-Length": str(len(body))} if length else {}
    response.__enter__.return_value = response
    return response


class TestCopyInto:
    """Tests for copy_into."""

    def test_copy_file(self, temp_dir: Path) -> None:
        root = temp_dir / "mnt"
        root.mkdir()
        source = temp_dir / "wpa_supplicant.conf"
        source.write_text("network={}\n")

        assert copy_into(root, [str(source), "/etc/wpa_supplicant/wpa_supplicant.conf"]) == 0
        assert (root / "etc" / "wpa_supplicant" / "wpa_supplicant.conf").read_text() == "network={}\n"

    def test_copy_file_into_directory(self, temp_dir: Path) -> None:
        root = temp_dir / "mnt"
        (root / "home" / "pi").mkdir(parents=True)
        source = temp_dir / "notes.txt"
        source.write_text("hi")

        copy_into(root, [str(source), "/home/pi/"])

        assert (root / "home" / "pi" / "notes.txt").read_text() == "hi"

    def test_copy_directory(self, temp_dir: Path) -> None:
        root = temp_dir / "mnt"
        root.mkdir()
        source = temp_dir / "app"
        (source / "lib").mkdir(parents=True)
        (source / "lib" / "a.py").write_text("x = 1\n")

        copy_into(root, [str(source), "/opt/app"])

        assert (root / "opt" / "app" / "lib" / "a.py").read_text() == "x = 1\n"

    def test_missing_source(self, temp_dir: Path) -> None:
        root = temp_dir / "mnt"
        root.mkdir()

        with pytest.raises(WorkError):
            copy_into(root, [str(temp_dir / "missing"), "/x"])


class TestExtractImage:
    """Tests for extract_image."""

    def test_single_image(self, temp_dir: Path) -> None:
        archive = make_zip(temp_dir / "a.zip", {"readme.txt": b"x", "raspios.img": b"IMG" * 100})

        result = extract_image(archive, temp_dir / "out" / "disk.img")

        assert result.read_bytes() == b"IMG" * 100

    def test_no_image(self, temp_dir: Path) -> None:
        archive = make_zip(temp_dir / "a.zip", {"readme.txt": b"x"})
        with pytest.raises(ValidationError, match="found 0"):
            extract_image(archive, temp_dir / "disk.img")

    def test_two_images(self, temp_dir: Path) -> None:
        archive = make_zip(temp_dir / "a.zip", {"a.img": b"a", "b.IMG": b"b"})
        with pytest.raises(ValidationError, match="found 2"):
            extract_image(archive, temp_dir / "disk.img")

    def test_not_a_zip(self, temp_dir: Path) -> None:
        archive = temp_dir / "a.zip"
        archive.write_bytes(b"not a zip")
        with pytest.raises(ValidationError, match="Not a zip"):
            extract_image(archive, temp_dir / "disk.img")


class TestDownload:
    """Tests for download and download_image."""

    def test_download_reports_progress(self, temp_dir: Path) -> None:
        body = b"z" * 10000
        progress: list[tuple[int, int | None]] = []

        with patch("imgtool.image.transfer.urllib.request.urlopen", return_value=fake_response(body)):
            download(
                "https://example.com/a.zip",
                temp_dir / "a.zip",
                LoadConfig(chunk_size_kb=4),
                lambda done, total: progress.append((done, total)),
            )

        assert (temp_dir / "a.zip").read_bytes() == body
        assert progress == [(4096, 10000), (8192, 10000), (10000, 10000)]

    def test_download_without_length(self, temp_dir: Path) -> None:
        progress: list[tuple[int, int | None]] = []

        with patch(
            "imgtool.image.transfer.urllib.request.urlopen",
            return_value=fake_response(b"abc", length=False),
        ):
            download("https://example.com/a.zip", temp_dir / "a.zip", LoadConfig(), lambda d, t: progress.append((d, t)))

        assert progress == [(3, None)]

    def test_download_failure(self, temp_dir: Path) -> None:
        with patch(
            "imgtool.image.transfer.urllib.request.urlopen", side_effect=OSError("unreachable")
        ):
            with pytest.raises(ImgToolError, match="unreachable"):
                download("https://example.com/a.zip", temp_dir / "a.zip", LoadConfig())

    def test_download_image(self, temp_dir: Path) -> None:
        archive = make_zip(temp_dir / "src.zip", {"os.img": b"\x55\xaa" * 10})
        body = archive.read_bytes()

        with patch("imgtool.image.transfer.urllib.request.urlopen", return_value=fake_response(body)):
            image = download_image("https://example.com/os.zip", temp_dir / "work" / "os.img", LoadConfig())

        assert image.read_bytes() == b"\x55\xaa" * 10
        assert [p.name for p in (temp_dir / "work").iterdir()] == ["os.img"]
