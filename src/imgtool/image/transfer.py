"""
Moving data into images: copying host files into a mounted root and
downloading zipped distribution images.
"""

from __future__ import annotations

import shutil
import tempfile
import urllib.request
import zipfile
from collections.abc import Callable, Sequence
from pathlib import Path

from imgtool.core.config import LoadConfig
from imgtool.core.errors import ImgToolError, ValidationError, WorkError
from imgtool.core.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int | None], None]

IMAGE_SUFFIX = ".img"


def copy_into(mount_point: Path, args: Sequence[str]) -> int:
    """Mount-session work copying a host path (args[0]) to a path in the image (args[1])."""
    src, dst = args
    source = Path(src)
    target = Path(mount_point) / dst.lstrip("/")

    try:
        if source.is_dir():
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
        else:
            if dst.endswith("/") or target.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                target = target / source.name
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
    except OSError as e:
        raise WorkError(f"Cannot copy {src} to {dst}: {e}") from e

    logger.info("Copied into image", source=str(source), target=str(target))
    return 0


def find_image_member(archive: zipfile.ZipFile) -> zipfile.ZipInfo:
    members = [
        info
        for info in archive.infolist()
        if not info.is_dir() and info.filename.lower().endswith(IMAGE_SUFFIX)
    ]
    if len(members) != 1:
        raise ValidationError(
            f"Expected exactly one {IMAGE_SUFFIX} file in archive, found {len(members)}"
        )
    return members[0]


def extract_image(archive_path: Path, image_path: Path) -> Path:
    """Extract the single .img member of a zip archive to image_path."""
    try:
        with zipfile.ZipFile(archive_path) as archive:
            member = find_image_member(archive)
            image_path.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(member) as src, open(image_path, "wb") as dst:
                shutil.copyfileobj(src, dst, length=1024 * 1024)
    except zipfile.BadZipFile as e:
        raise ValidationError(f"Not a zip archive: {archive_path}") from e

    logger.info("Extracted image", member=member.filename, image=str(image_path))
    return image_path


def download(
    url: str,
    destination: Path,
    config: LoadConfig,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """Stream url to destination."""
    chunk_size = config.chunk_size_kb * 1024
    logger.info("Downloading", url=url, destination=str(destination))

    try:
        with urllib.request.urlopen(url, timeout=config.timeout_seconds) as response:
            length = response.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else None
            done = 0
            with open(destination, "wb") as f:
                while chunk := response.read(chunk_size):
                    f.write(chunk)
                    done += len(chunk)
                    if on_progress:
                        on_progress(done, total)
    except (OSError, ValueError) as e:
        raise ImgToolError(f"Download of {url} failed: {e}") from e

    return destination


def download_image(
    url: str,
    image_path: Path,
    config: LoadConfig,
    on_progress: ProgressCallback | None = None,
) -> Path:
    """Download a zipped image and unpack it to image_path."""
    directory = config.download_directory or image_path.parent
    directory.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(dir=directory, prefix="imgtool-load-") as tmp:
        archive = download(url, Path(tmp) / "image.zip", config, on_progress)
        return extract_image(archive, image_path)
