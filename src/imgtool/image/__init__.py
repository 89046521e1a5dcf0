"""
img-tool Image Operations.

Partition table inspection, loop bindings, mount sessions, chroot
execution, resizing and PARTUUID propagation.
"""

from imgtool.image.binder import BindingStack, bind, bound, unbind
from imgtool.image.chroot import ChrootExecutor
from imgtool.image.inspector import inspect, read_disk_id
from imgtool.image.mount import MountSession, open_session
from imgtool.image.partuuid import PartUuidFixer
from imgtool.image.resize import ResizeEngine, plan_target
from imgtool.image.transfer import copy_into, download_image

__all__ = [
    "BindingStack",
    "bind",
    "bound",
    "unbind",
    "ChrootExecutor",
    "inspect",
    "read_disk_id",
    "MountSession",
    "open_session",
    "PartUuidFixer",
    "ResizeEngine",
    "plan_target",
    "copy_into",
    "download_image",
]
