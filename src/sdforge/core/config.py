"""
sdforge configuration management.

Provides centralized configuration with validation using Pydantic.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

PISHRINK_URL = "https://raw.githubusercontent.com/Drewsif/PiShrink/master/pishrink.sh"


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    file_enabled: bool = True
    console_enabled: bool = True
    json_format: bool = False
    log_directory: Path = Field(default_factory=lambda: Path.home() / ".sdforge" / "logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        return Path(v).expanduser().resolve()


class CopyConfig(BaseModel):
    """Configuration for the block-copy stage."""

    block_size_mb: int = Field(default=4, ge=1, le=1024)
    fsync: bool = True


class ShrinkConfig(BaseModel):
    """Configuration for the optional image-shrinking stage."""

    enabled: bool = True
    tool_path: Path = Path("/usr/local/bin/pishrink.sh")
    download_url: str = PISHRINK_URL
    verbose: bool = True


class ControllerConfig(BaseModel):
    """Configuration for the operation controller."""

    log_lines: int = Field(default=6, ge=5, le=50)
    log_line_width: int = Field(default=60, ge=20, le=400)
    privilege_command: str = "sudo"
    skip_privilege_check_as_root: bool = True


class SdForgeConfig(BaseModel):
    """Main sdforge configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    copy_stage: CopyConfig = Field(default_factory=CopyConfig, alias="copy")
    shrink: ShrinkConfig = Field(default_factory=ShrinkConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    default_image_name: str = "pi-backup.img"

    model_config = {"populate_by_name": True}

    @classmethod
    def load(cls, config_path: Path | None = None) -> SdForgeConfig:
        """Load configuration from file or create default."""
        if config_path is None:
            config_path = Path.home() / ".sdforge" / "config.json"

        if config_path.exists():
            with open(config_path) as f:
                data = json.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = Path.home() / ".sdforge" / "config.json"

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json", by_alias=True), f, indent=2, default=str)

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.logging.log_directory.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Path | None = None) -> SdForgeConfig:
    """Load or create configuration."""
    config = SdForgeConfig.load(config_path)
    config.ensure_directories()
    return config
