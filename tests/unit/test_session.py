"""
Tests for imgtool.core.session module.
"""

import json
from pathlib import Path

import pytest

from conftest import FakeBackend, write_image
from imgtool.core.config import ImgToolConfig
from imgtool.core.errors import ResizeConstraintError, ValidationError
from imgtool.core.session import Session, SessionReport


class TestSessionReport:
    """Tests for SessionReport."""

    def test_summary(self) -> None:
        from datetime import datetime

        report = SessionReport(session_id="abc", started_at=datetime.now())
        report.operations = [{"success": True}, {"success": False}]
        data = report.to_dict()
        assert data["summary"]["total_operations"] == 2
        assert data["summary"]["successful_operations"] == 1
        assert data["summary"]["failed_operations"] == 1
        assert data["duration_seconds"] is None


class TestSession:
    """Tests for Session."""

    def test_run_tracks_result_code(self, sample_config: ImgToolConfig) -> None:
        session = Session(config=sample_config, backend=FakeBackend())

        assert session.run("exec", lambda: 3, image="a.img") == 3

        op = session.get_report().operations[0]
        assert op["name"] == "exec"
        assert op["result_code"] == 3
        assert op["success"] is False
        assert op["image"] == "a.img"

    def test_run_tracks_errors(self, sample_config: ImgToolConfig) -> None:
        session = Session(config=sample_config, backend=FakeBackend())

        def too_small() -> None:
            raise ResizeConstraintError("below the minimum")

        with pytest.raises(ResizeConstraintError):
            session.run("size", too_small)

        report = session.get_report()
        assert report.operations[0]["success"] is False
        assert report.operations[0]["exit_code"] == 1
        assert report.errors[0]["error_type"] == "ResizeConstraintError"

    def test_close_saves_report(self, sample_config: ImgToolConfig) -> None:
        with Session(config=sample_config, backend=FakeBackend(), session_id="12345678-x") as session:
            session.run("size", lambda: None)

        path = sample_config.session_directory / "report_12345678.json"
        data = json.loads(path.read_text())
        assert data["session_id"] == "12345678-x"
        assert data["summary"]["successful_operations"] == 1
        assert session.close() is None

    def test_no_report_when_disabled(self, sample_config: ImgToolConfig) -> None:
        sample_config.save_session_reports = False
        session = Session(config=sample_config, backend=FakeBackend())
        assert session.close() is None
        assert list(sample_config.session_directory.iterdir()) == []

    def test_preflight_passes(self, sample_config: ImgToolConfig, temp_dir: Path) -> None:
        session = Session(config=sample_config, backend=FakeBackend())
        image = write_image(temp_dir / "a.img", 4096)

        report = session.preflight(image)

        assert report.all_passed

    def test_preflight_not_root(self, sample_config: ImgToolConfig, temp_dir: Path) -> None:
        backend = FakeBackend()
        backend.admin = False
        session = Session(config=sample_config, backend=backend)

        with pytest.raises(ValidationError, match="root"):
            session.preflight(write_image(temp_dir / "a.img", 4096))

    def test_preflight_without_image_checks_privileges(
        self, sample_config: ImgToolConfig
    ) -> None:
        report = Session(config=sample_config, backend=FakeBackend()).preflight()

        assert [c.name for c in report.checks] == ["Privileges"]

    def test_preflight_without_image_not_root(self, sample_config: ImgToolConfig) -> None:
        backend = FakeBackend()
        backend.admin = False

        with pytest.raises(ValidationError, match="root"):
            Session(config=sample_config, backend=backend).preflight()
