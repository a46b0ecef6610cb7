"""
Device enumeration.

Listing devices is advisory: any failure collapses into a single sentinel
device so the caller can always fall back to entering a path by hand.
"""

from __future__ import annotations

from sdforge.core.logging import get_logger
from sdforge.core.models import DETECTION_FAILED, Device
from sdforge.platform.base import PlatformCapabilities

logger = get_logger(__name__)


class DeviceEnumerator:
    """Lists candidate removable block devices for the current platform."""

    def __init__(self, capabilities: PlatformCapabilities) -> None:
        self.capabilities = capabilities

    def list(self) -> list[Device]:
        """Return a fresh device list, or the detection-failed sentinel."""
        try:
            devices = self.capabilities.list_devices()
        except Exception as e:
            logger.warning(
                "Device detection failed",
                platform=self.capabilities.name,
                error=str(e),
            )
            return [DETECTION_FAILED]

        if self.capabilities.uses_raw_devices:
            devices = prefer_raw_paths(devices, self.capabilities)

        logger.debug("Devices detected", count=len(devices))
        return devices


def prefer_raw_paths(devices: list[Device], capabilities: PlatformCapabilities) -> list[Device]:
    """
    Replace buffered device paths with their raw form and drop duplicates
    that name the same physical disk.
    """
    seen: dict[str, Device] = {}
    for device in devices:
        raw_path = capabilities.raw_device_path(device.raw_path)
        if raw_path in seen:
            continue
        if raw_path != device.raw_path:
            device = Device(
                identifier=device.identifier,
                raw_path=raw_path,
                display_label=device.display_label,
                removable=device.removable,
            )
        seen[raw_path] = device
    return list(seen.values())
