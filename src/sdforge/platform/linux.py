"""
Linux platform capabilities.

Devices are enumerated with lsblk; there is no raw/buffered split and no
identifier-based whole-disk unmount, so the unmount stage passes through.
"""

from __future__ import annotations

from sdforge.core.models import Device
from sdforge.platform.base import PlatformCapabilities
from sdforge.platform.parsers import parse_lsblk_devices


class LinuxCapabilities(PlatformCapabilities):
    """Linux implementation of the capability table."""

    LSBLK = "lsblk"

    @property
    def name(self) -> str:
        return "linux"

    @property
    def uses_raw_devices(self) -> bool:
        return False

    def copy_args(
        self,
        source: str | None,
        destination: str,
        block_size_mb: int,
        fsync: bool = True,
    ) -> list[str]:
        args = [f"if={source}"] if source is not None else []
        args += [f"of={destination}", f"bs={block_size_mb}M", "status=progress"]
        if fsync:
            args.append("conv=fsync")
        return args

    def list_devices(self) -> list[Device]:
        result = self.run_command(
            [
                self.LSBLK,
                "-J",  # JSON output
                "-b",  # Size in bytes
                "-d",  # Whole disks only
                "-o",
                "NAME,PATH,SIZE,TYPE,MODEL,RM,TRAN",
            ]
        )
        if not result.success:
            raise RuntimeError(f"lsblk failed: {str(result.stderr).strip()}")
        return parse_lsblk_devices(str(result.stdout))
