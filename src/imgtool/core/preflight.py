"""
img-tool preflight checks.

Runs before any resource is acquired: privileges, required tools, the image
path, and whether the image is already mounted on the host.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil

from imgtool.core.errors import ValidationError
from imgtool.core.logging import get_logger
from imgtool.core.models import Image, ImageKind

logger = get_logger(__name__)

CheckFunc = Callable[[dict[str, Any]], "PreflightCheck | bool"]


@dataclass
class PreflightCheck:
    """Result of a single preflight check."""

    name: str
    passed: bool
    message: str
    severity: str = "info"  # info, warning, error
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreflightReport:
    """Complete preflight check report."""

    checks: list[PreflightCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def has_errors(self) -> bool:
        return any(c.severity == "error" and not c.passed for c in self.checks)

    @property
    def failures(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.passed and c.severity == "error"]

    def get_summary(self) -> str:
        """Get human-readable summary."""
        passed = sum(1 for c in self.checks if c.passed)
        lines = [f"Preflight: {passed}/{len(self.checks)} checks passed"]
        for check in self.checks:
            status = "✓" if check.passed else "✗"
            lines.append(f"[{status}] {check.name}: {check.message}")
        return "\n".join(lines)

    def raise_for_errors(self) -> None:
        """Raise ValidationError naming every failed error-level check."""
        failures = self.failures
        if failures:
            raise ValidationError("; ".join(f"{c.name}: {c.message}" for c in failures))


class PreflightChecker:
    """Performs preflight checks before operations."""

    def __init__(self) -> None:
        self._checks: list[tuple[str, CheckFunc]] = []

    def add_check(self, name: str, check_func: CheckFunc) -> None:
        """Add a preflight check function."""
        self._checks.append((name, check_func))

    def run_checks(self, context: dict[str, Any]) -> PreflightReport:
        """Run all preflight checks and return report."""
        report = PreflightReport()

        for name, check_func in self._checks:
            try:
                result = check_func(context)
            except Exception as e:
                report.checks.append(
                    PreflightCheck(
                        name=name,
                        passed=False,
                        message=f"Check failed with error: {e}",
                        severity="error",
                    )
                )
                continue

            if isinstance(result, PreflightCheck):
                report.checks.append(result)
            else:
                report.checks.append(
                    PreflightCheck(
                        name=name,
                        passed=bool(result),
                        message="Passed" if result else "Failed",
                        severity="info" if result else "error",
                    )
                )

        logger.debug(
            "Preflight finished",
            passed=report.all_passed,
            checks=[c.name for c in report.checks],
        )
        return report


def check_root(context: dict[str, Any]) -> PreflightCheck:
    """Loop devices, mounts and chroot all need root."""
    backend = context["backend"]
    if backend.is_admin():
        return PreflightCheck(name="Privileges", passed=True, message="Running as root")
    return PreflightCheck(
        name="Privileges",
        passed=False,
        message="img-tool must be run as root",
        severity="error",
    )


def check_tools(context: dict[str, Any]) -> PreflightCheck:
    """Check that every external tool the command needs is on PATH."""
    tools: list[str] = context.get("tools", [])
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        return PreflightCheck(
            name="Tools",
            passed=False,
            message=f"Missing tools: {', '.join(missing)}",
            severity="error",
            details={"missing": missing},
        )
    return PreflightCheck(name="Tools", passed=True, message="All tools available")


def check_image_path(context: dict[str, Any]) -> PreflightCheck:
    """Check that the image exists and is a file or block device."""
    image_path: Path = context["image_path"]
    try:
        kind = Image(image_path).validate()
    except ValidationError as e:
        return PreflightCheck(name="Image", passed=False, message=str(e), severity="error")
    return PreflightCheck(
        name="Image",
        passed=True,
        message=f"{image_path} is a {kind.value}",
        details={"kind": kind.value},
    )


def check_not_mounted(context: dict[str, Any]) -> PreflightCheck:
    """A block device image must not have any of its partitions mounted on the host."""
    image_path: Path = context["image_path"]
    try:
        if Image(image_path).kind != ImageKind.BLOCK_DEVICE:
            return PreflightCheck(name="Mount Status", passed=True, message="Not a block device")
    except ValidationError:
        return PreflightCheck(name="Mount Status", passed=True, message="Skipped")

    device = str(image_path.resolve())
    own_device = re.compile(rf"^{re.escape(device)}(p?\d+)?$")
    mounted = [
        p.mountpoint for p in psutil.disk_partitions(all=True) if own_device.match(p.device)
    ]
    if mounted:
        return PreflightCheck(
            name="Mount Status",
            passed=False,
            message=f"{device} is mounted at {', '.join(mounted)}",
            severity="error",
            details={"mountpoints": mounted},
        )
    return PreflightCheck(name="Mount Status", passed=True, message="Device is not mounted")


def create_standard_preflight_checker() -> PreflightChecker:
    """Create a preflight checker with the checks every image command runs."""
    checker = PreflightChecker()
    checker.add_check("Privileges", check_root)
    checker.add_check("Tools", check_tools)
    checker.add_check("Image", check_image_path)
    checker.add_check("Mount Status", check_not_mounted)
    return checker


def create_privilege_checker() -> PreflightChecker:
    """Create a preflight checker for commands that write an image but never bind it."""
    checker = PreflightChecker()
    checker.add_check("Privileges", check_root)
    return checker
