"""
img-tool Core - Configuration, logging, errors, models and sessions.
"""

from imgtool.core.config import ImgToolConfig
from imgtool.core.errors import (
    BindError,
    CleanupError,
    ImgToolError,
    MountError,
    ResizeConstraintError,
    ValidationError,
    WorkError,
)
from imgtool.core.logging import get_logger, setup_logging
from imgtool.core.session import Session

__all__ = [
    "ImgToolConfig",
    "ImgToolError",
    "ValidationError",
    "BindError",
    "MountError",
    "ResizeConstraintError",
    "CleanupError",
    "WorkError",
    "Session",
    "get_logger",
    "setup_logging",
]
