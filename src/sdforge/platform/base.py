"""
sdforge Platform Capabilities Base.

Defines the capability table consulted by the controller for everything
that differs between platform families: device paths, unmounting, the copy
tool's flag dialect and device enumeration.
"""

from __future__ import annotations

import os
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sdforge.core.logging import get_logger

if TYPE_CHECKING:
    from sdforge.core.models import Device

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of a short-lived command."""

    returncode: int
    stdout: str | bytes
    stderr: str | bytes
    command: list[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


class PlatformCapabilities(ABC):
    """Abstract capability table for one platform family."""

    COPY_TOOL = "dd"
    SHELL = "bash"
    CURL = "curl"
    CHMOD = "chmod"
    TEST = "test"

    # Decompressors for compressed-image restore, keyed by image suffix
    DECOMPRESSORS: dict[str, list[str]] = {
        ".img.gz": ["gzip", "-dc"],
        ".img.xz": ["xz", "-dc"],
        ".img.zst": ["zstd", "-dc"],
    }

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name (e.g., 'linux', 'macos')."""

    @property
    @abstractmethod
    def uses_raw_devices(self) -> bool:
        """Whether the platform exposes separate raw and buffered device nodes."""

    @property
    def disk_identifier_pattern(self) -> re.Pattern[str] | None:
        """Pattern extracting the disk identifier used for unmounting."""
        return None

    @abstractmethod
    def copy_args(
        self,
        source: str | None,
        destination: str,
        block_size_mb: int,
        fsync: bool = True,
    ) -> list[str]:
        """Arguments for the copy tool. A None source reads standard input."""

    @abstractmethod
    def list_devices(self) -> list[Device]:
        """
        List candidate removable devices.
        Raises RuntimeError when enumeration fails.
        """

    def disk_identifier(self, path: str) -> str | None:
        """Extract the disk identifier from a device path, if the platform uses one."""
        pattern = self.disk_identifier_pattern
        if pattern is None or not path:
            return None
        match = pattern.search(path)
        return match.group(1) if match else None

    def unmount_command(self, identifier: str) -> list[str] | None:
        """Command that force-unmounts a whole disk, or None when not supported."""
        return None

    def raw_device_path(self, path: str) -> str:
        """Map a buffered device path to its raw form where one exists."""
        return path

    def decompress_command(self, image_path: str) -> list[str] | None:
        """Decompressor command streaming the image to standard output."""
        lower = image_path.lower()
        for suffix, command in self.DECOMPRESSORS.items():
            if lower.endswith(suffix):
                return [*command, image_path]
        return None

    def is_admin(self) -> bool:
        """Check if running with root privileges."""
        return os.geteuid() == 0

    def run_command(
        self,
        command: list[str],
        timeout: int = 30,
        text: bool = True,
    ) -> CommandResult:
        """
        Run a short-lived system command and capture its output.

        Timeouts and launch errors come back as a result with returncode -1;
        callers decide what a failure means.
        """
        logger.debug("Running command", command=command)
        empty: str | bytes = "" if text else b""

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=text,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(-1, empty, f"Command timed out after {timeout}s", command)
        except OSError as e:
            return CommandResult(-1, empty, str(e), command)

        return CommandResult(result.returncode, result.stdout, result.stderr, command)
