"""
img-tool - Raw disk image toolkit.

Mounts, chroots into, copies into and resizes raw disk images with a
FAT boot and an ext root partition, such as Raspberry Pi images.
"""

__version__ = "1.0.0"
__author__ = "img-tool developers"

from imgtool.core.config import ImgToolConfig
from imgtool.core.session import Session

__all__ = ["ImgToolConfig", "Session", "__version__"]
