"""
macOS platform capabilities.

Whole disks are addressed as diskN. Every disk has a buffered node
(/dev/diskN) and a raw node (/dev/rdiskN); the raw node is several times
faster for sequential copies and is always preferred.
"""

from __future__ import annotations

import re

from sdforge.core.logging import get_logger
from sdforge.core.models import Device
from sdforge.platform.base import PlatformCapabilities
from sdforge.platform.parsers import (
    build_diskutil_label,
    parse_diskutil_info_plist,
    parse_diskutil_list_plist,
)

logger = get_logger(__name__)

DISK_PATTERN = re.compile(r"r?(disk\d+)")
BUFFERED_DEVICE_PATTERN = re.compile(r"^/dev/(disk\d+)$")


class MacOSCapabilities(PlatformCapabilities):
    """macOS implementation of the capability table."""

    DISKUTIL = "diskutil"

    @property
    def name(self) -> str:
        return "macos"

    @property
    def uses_raw_devices(self) -> bool:
        return True

    @property
    def disk_identifier_pattern(self) -> re.Pattern[str]:
        return DISK_PATTERN

    def unmount_command(self, identifier: str) -> list[str]:
        return [self.DISKUTIL, "unmountDisk", "force", identifier]

    def raw_device_path(self, path: str) -> str:
        match = BUFFERED_DEVICE_PATTERN.match(path)
        if match:
            return f"/dev/r{match.group(1)}"
        return path

    def copy_args(
        self,
        source: str | None,
        destination: str,
        block_size_mb: int,
        fsync: bool = True,
    ) -> list[str]:
        # BSD dd has no conv=fsync and spells the block size suffix in lowercase
        args = [f"if={source}"] if source is not None else []
        return args + [f"of={destination}", f"bs={block_size_mb}m", "status=progress"]

    def list_devices(self) -> list[Device]:
        result = self.run_command([self.DISKUTIL, "list", "-plist", "external"], text=False)
        if not result.success:
            raise RuntimeError(f"diskutil list failed: {result.stderr!r}")

        devices: list[Device] = []
        for identifier in parse_diskutil_list_plist(result.stdout):
            info_result = self.run_command(
                [self.DISKUTIL, "info", "-plist", identifier], text=False
            )
            info = parse_diskutil_info_plist(info_result.stdout) if info_result.success else {}
            if not info:
                logger.debug("No disk info", disk=identifier)

            devices.append(
                Device(
                    identifier=identifier,
                    raw_path=self.raw_device_path(f"/dev/{identifier}"),
                    display_label=build_diskutil_label(identifier, info),
                    removable=True,
                )
            )
        return devices
