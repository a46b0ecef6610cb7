"""
sdforge Core - Operation pipeline.

Contains the operation controller, the process runner, configuration,
logging and the data model shared by all of them.
"""

from sdforge.core.config import SdForgeConfig
from sdforge.core.controller import CancelOutcome, OperationController, Trigger, advance
from sdforge.core.logging import get_logger, setup_logging
from sdforge.core.models import (
    Device,
    Failure,
    Metrics,
    Operation,
    OperationMode,
    OperationState,
    Success,
)
from sdforge.core.runner import ProcessRunner

__all__ = [
    "CancelOutcome",
    "Device",
    "Failure",
    "Metrics",
    "Operation",
    "OperationController",
    "OperationMode",
    "OperationState",
    "ProcessRunner",
    "SdForgeConfig",
    "Success",
    "Trigger",
    "advance",
    "get_logger",
    "setup_logging",
]
