"""
img-tool configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOME = Path.home() / ".imgtool"


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file_enabled: bool = False
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class MountConfig(BaseModel):
    """Configuration for loop bindings and mount sessions."""

    unmount_retries: int = Field(default=3, ge=1, le=20)
    unmount_retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    loop_settle_seconds: float = Field(default=1.0, ge=0.0)
    mount_point_prefix: str = "imgtool-"
    root_fstype: str = "ext4"
    boot_fstype: str = "vfat"
    boot_directory: str = "boot"


class ChrootConfig(BaseModel):
    """Configuration for the chroot executor."""

    emulators: dict[str, str] = Field(
        default_factory=lambda: {
            "arm": "qemu-arm-static",
            "aarch64": "qemu-aarch64-static",
        }
    )
    binfmt_directory: Path = Path("/proc/sys/fs/binfmt_misc")
    resolv_conf: Path = Path("/etc/resolv.conf")
    script_shell: str = "/bin/sh"
    interactive_shell: str = "/bin/bash"
    script_directory: str = "root"


class ResizeConfig(BaseModel):
    """Configuration for the resize engine."""

    fsck_timeout_seconds: int = Field(default=3600, ge=1)
    resize_timeout_seconds: int = Field(default=7200, ge=1)
    rewrite_partuuid: bool = True


class LoadConfig(BaseModel):
    """Configuration for image downloads."""

    timeout_seconds: int = Field(default=60, ge=1)
    chunk_size_kb: int = Field(default=1024, ge=4, le=65536)
    download_directory: Path | None = None


class ImgToolConfig(BaseModel):
    """Main img-tool configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    mount: MountConfig = Field(default_factory=MountConfig)
    chroot: ChrootConfig = Field(default_factory=ChrootConfig)
    resize: ResizeConfig = Field(default_factory=ResizeConfig)
    load: LoadConfig = Field(default_factory=LoadConfig)
    session_directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "sessions")
    save_session_reports: bool = True

    @field_validator("session_directory", mode="before")
    @classmethod
    def expand_session_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()

    @classmethod
    def load_file(cls, config_path: Path | None = None) -> ImgToolConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = DEFAULT_HOME / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        if self.logging.file_enabled:
            self.logging.log_directory.mkdir(parents=True, exist_ok=True)
        if self.save_session_reports:
            self.session_directory.mkdir(parents=True, exist_ok=True)

    def get_session_file(self, session_id: str) -> Path:
        """Get the report path for a session."""
        return self.session_directory / f"report_{session_id[:8]}.json"


def load_config(config_path: Path | None = None) -> ImgToolConfig:
    """Load or create configuration."""
    config = ImgToolConfig.load_file(config_path)
    config.ensure_directories()
    return config
