"""
img-tool error taxonomy.

ValidationError, BindError and ResizeConstraintError are raised before any
destructive step. CleanupError is logged and never overrides a result code.
WorkError carries the return code of caller-supplied work.
"""

from __future__ import annotations


class ImgToolError(Exception):
    """Base class for all img-tool failures."""

    exit_code = 1


class ValidationError(ImgToolError):
    """Bad path, unsupported partition layout or type, missing privileges."""


class BindError(ImgToolError):
    """A loop device could not be found or attached."""


class MountError(ImgToolError):
    """A mount call failed."""


class ResizeConstraintError(ImgToolError):
    """Requested size is below the minimum or beyond the device capacity."""


class CleanupError(ImgToolError):
    """Teardown could not complete (unmount retries exhausted)."""


class WorkError(ImgToolError):
    """Caller-supplied work finished with a non-zero return code."""

    def __init__(self, message: str, returncode: int = 1) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.exit_code = returncode
