"""
img-tool Session Management.

A session is one CLI invocation: configuration, logging, the platform
backend and a report of every operation run, saved as JSON on close.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from imgtool.core.config import ImgToolConfig, load_config
from imgtool.core.errors import ImgToolError
from imgtool.core.logging import get_logger, setup_logging
from imgtool.core.preflight import (
    PreflightReport,
    create_privilege_checker,
    create_standard_preflight_checker,
)
from imgtool.platform.base import PlatformBackend

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class SessionReport:
    """Session report for audit and review."""

    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    operations: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config_snapshot: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": (
                (self.ended_at - self.started_at).total_seconds()
                if self.ended_at
                else None
            ),
            "operations": self.operations,
            "errors": self.errors,
            "warnings": self.warnings,
            "config_snapshot": self.config_snapshot,
            "summary": {
                "total_operations": len(self.operations),
                "successful_operations": sum(
                    1 for op in self.operations if op.get("success", False)
                ),
                "failed_operations": sum(
                    1 for op in self.operations if not op.get("success", True)
                ),
                "total_errors": len(self.errors),
                "total_warnings": len(self.warnings),
            },
        }

    def save(self, path: Path) -> None:
        """Save report to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


class Session:
    """
    One img-tool invocation.

    Owns the configuration and the platform backend, runs preflight checks
    and records every operation in the session report.
    """

    def __init__(
        self,
        config: ImgToolConfig | None = None,
        session_id: str | None = None,
        backend: PlatformBackend | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()

        setup_logging(self.config.logging)

        self._report = SessionReport(
            session_id=self.id,
            started_at=self.started_at,
            config_snapshot=self.config.model_dump(mode="json"),
        )

        # Platform backend (lazily loaded)
        self._platform_backend = backend
        self._closed = False

        logger.info("Session started", session_id=self.id)

    @property
    def platform(self) -> PlatformBackend:
        """Get the platform-specific backend."""
        if self._platform_backend is None:
            from imgtool.platform import get_platform_backend

            self._platform_backend = get_platform_backend(
                fsck_timeout=self.config.resize.fsck_timeout_seconds,
                resize_timeout=self.config.resize.resize_timeout_seconds,
            )
        return self._platform_backend

    def preflight(
        self, image_path: Path | None = None, tools: list[str] | None = None
    ) -> PreflightReport:
        """
        Run preflight checks; raises ValidationError on any failure.

        With an image path the standard checks run; without one only the
        privilege check does.
        """
        if image_path is None:
            report = create_privilege_checker().run_checks({"backend": self.platform})
        else:
            report = create_standard_preflight_checker().run_checks(
                {
                    "backend": self.platform,
                    "image_path": image_path,
                    "tools": tools if tools is not None else self.platform.required_tools(),
                }
            )
        for check in report.checks:
            if not check.passed and check.severity != "error":
                self._report.warnings.append(f"{check.name}: {check.message}")
        report.raise_for_errors()
        return report

    def run(self, name: str, func: Callable[[], T], **details: Any) -> T:
        """Run an operation and track it in the session report."""
        started = datetime.now()
        record: dict[str, Any] = {
            "timestamp": started.isoformat(),
            "name": name,
            **details,
        }

        try:
            result = func()
        except BaseException as e:
            record["success"] = False
            record["error"] = str(e) or type(e).__name__
            record["exit_code"] = e.exit_code if isinstance(e, ImgToolError) else None
            record["duration_seconds"] = (datetime.now() - started).total_seconds()
            self._report.operations.append(record)
            self._report.errors.append(
                {
                    "timestamp": datetime.now().isoformat(),
                    "operation": name,
                    "error_type": type(e).__name__,
                    "error": record["error"],
                }
            )
            logger.error("Operation failed", operation=name, error=record["error"])
            raise

        # Work functions return a result code, engines return a report
        if isinstance(result, int) and not isinstance(result, bool):
            record["result_code"] = result
            record["success"] = result == 0
        else:
            record["success"] = True
            warnings = getattr(result, "warnings", None)
            if warnings:
                record["warnings"] = list(warnings)
                self._report.warnings.extend(warnings)
        record["duration_seconds"] = (datetime.now() - started).total_seconds()
        self._report.operations.append(record)

        logger.info("Operation completed", operation=name, success=record["success"])
        return result

    def close(self) -> Path | None:
        """Close the session and save the report, if enabled."""
        if self._closed:
            return None
        self._closed = True
        self._report.ended_at = datetime.now()

        report_path: Path | None = None
        if self.config.save_session_reports:
            report_path = self.config.get_session_file(self.id)
            try:
                self._report.save(report_path)
            except OSError as e:
                logger.warning("Could not save session report", path=str(report_path), error=str(e))
                report_path = None

        logger.info(
            "Session closed",
            session_id=self.id,
            duration_seconds=(self._report.ended_at - self.started_at).total_seconds(),
            report_path=str(report_path) if report_path else None,
        )

        return report_path

    def get_report(self) -> SessionReport:
        """Get the current session report."""
        return self._report

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
