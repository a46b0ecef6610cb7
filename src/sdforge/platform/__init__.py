"""
sdforge Platform Abstraction Layer.

Provides the capability tables for the two supported POSIX families,
Linux and macOS.
"""

from __future__ import annotations

import platform

from sdforge.platform.base import CommandResult, PlatformCapabilities


def get_platform_capabilities() -> PlatformCapabilities:
    """Get the capability table for the current OS."""
    system = platform.system().lower()

    if system == "linux":
        from sdforge.platform.linux import LinuxCapabilities

        return LinuxCapabilities()
    elif system == "darwin":
        from sdforge.platform.macos import MacOSCapabilities

        return MacOSCapabilities()
    else:
        raise RuntimeError(f"Unsupported platform: {system}")


__all__ = [
    "CommandResult",
    "PlatformCapabilities",
    "get_platform_capabilities",
]
