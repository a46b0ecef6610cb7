"""
sdforge - Raw block-device imaging for SD cards and USB drives.

Backs a device up to an image file (optionally shrinking it afterwards)
and restores image files, plain or compressed, back to a device.
"""

__version__ = "1.0.0"
__author__ = "sdforge Team"

from sdforge.core.config import SdForgeConfig
from sdforge.core.controller import OperationController

__all__ = ["OperationController", "SdForgeConfig", "__version__"]
