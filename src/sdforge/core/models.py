"""
sdforge data models.

Defines the operation value threaded through the controller, the metrics
it carries, and the devices produced by enumeration.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

BYTES_PER_MEGABYTE = 1024 * 1024

UNCOMPRESSED_IMAGE_SUFFIXES = (".img", ".iso", ".dmg")
COMPRESSED_IMAGE_SUFFIXES = (".img.gz", ".img.xz", ".img.zst")
IMAGE_SUFFIXES = COMPRESSED_IMAGE_SUFFIXES + UNCOMPRESSED_IMAGE_SUFFIXES


class OperationMode(Enum):
    """Direction of the copy pipeline."""

    BACKUP = "backup"  # device -> image file
    RESTORE = "restore"  # image file -> device


class OperationState(Enum):
    """Pipeline state of an operation."""

    IDLE = "idle"
    VALIDATING = "validating"
    UNMOUNTING = "unmounting"
    COPYING = "copying"
    SHRINKING = "shrinking"
    COMPLETED = "completed"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.COMPLETED, OperationState.ERRORED)

    @property
    def is_active(self) -> bool:
        return self not in (OperationState.IDLE, OperationState.COMPLETED, OperationState.ERRORED)


def is_image_file(path: str) -> bool:
    """Whether a path carries a recognized image suffix."""
    return path.lower().endswith(IMAGE_SUFFIXES)


def compressed_suffix(path: str) -> str | None:
    """Return the compressed-image suffix of a path, if any."""
    lower = path.lower()
    for suffix in COMPRESSED_IMAGE_SUFFIXES:
        if lower.endswith(suffix):
            return suffix
    return None


@dataclass(frozen=True)
class Metrics:
    """Copy-stage metrics parsed from tool output."""

    bytes_transferred: int = 0
    transfer_rate_text: str = ""

    @property
    def megabytes(self) -> float:
        return self.bytes_transferred / BYTES_PER_MEGABYTE

    @property
    def display_text(self) -> str:
        return f"{self.megabytes:.1f} MB"

    def merge(self, bytes_transferred: int | None, rate_text: str | None) -> Metrics:
        """Fold a parsed progress reading into the metrics.

        The byte count never decreases within one copy stage.
        """
        new_bytes = self.bytes_transferred
        if bytes_transferred is not None:
            new_bytes = max(new_bytes, bytes_transferred)
        return Metrics(
            bytes_transferred=new_bytes,
            transfer_rate_text=rate_text if rate_text else self.transfer_rate_text,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "bytes_transferred": self.bytes_transferred,
            "transfer_rate_text": self.transfer_rate_text,
        }


@dataclass(frozen=True)
class Success:
    """Terminal result of a completed operation."""

    final_path: str


@dataclass(frozen=True)
class Failure:
    """Terminal result of an errored operation."""

    reason: str


TerminalResult = Success | Failure


@dataclass(frozen=True)
class Operation:
    """One full pipeline run.

    Instances are immutable; every update returns a new value.
    """

    mode: OperationMode
    source: str
    destination: str
    state: OperationState = OperationState.IDLE
    metrics: Metrics = field(default_factory=Metrics)
    recent_log: tuple[str, ...] = ()
    log_capacity: int = 6
    last_error_text: str = ""
    warnings: tuple[str, ...] = ()
    terminal_result: TerminalResult | None = None

    @property
    def is_compressed_restore(self) -> bool:
        return self.mode == OperationMode.RESTORE and compressed_suffix(self.source) is not None

    @property
    def unmount_target(self) -> str:
        """Device path whose disk gets unmounted before copying."""
        return self.source if self.mode == OperationMode.BACKUP else self.destination

    def with_metrics(self, metrics: Metrics) -> Operation:
        return replace(self, metrics=metrics)

    def with_log(self, line: str) -> Operation:
        log = (self.recent_log + (line,))[-self.log_capacity :]
        return replace(self, recent_log=log)

    def with_error_text(self, text: str) -> Operation:
        return replace(self, last_error_text=text)

    def with_warning(self, warning: str) -> Operation:
        return replace(self, warnings=self.warnings + (warning,))

    def reset_for_stage(self) -> Operation:
        """Clear per-stage state when a new copy stage begins."""
        return replace(self, metrics=Metrics(), last_error_text="")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "mode": self.mode.value,
            "source": self.source,
            "destination": self.destination,
            "state": self.state.value,
            "metrics": self.metrics.to_dict(),
            "recent_log": list(self.recent_log),
            "warnings": list(self.warnings),
        }
        if isinstance(self.terminal_result, Success):
            result["final_path"] = self.terminal_result.final_path
        elif isinstance(self.terminal_result, Failure):
            result["reason"] = self.terminal_result.reason
        return result


@dataclass(frozen=True)
class Device:
    """A candidate block device detected by enumeration."""

    identifier: str
    raw_path: str
    display_label: str
    removable: bool = False

    @property
    def is_sentinel(self) -> bool:
        """True for the placeholder returned when detection fails."""
        return not self.raw_path

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "raw_path": self.raw_path,
            "display_label": self.display_label,
            "removable": self.removable,
        }


DETECTION_FAILED = Device(
    identifier="",
    raw_path="",
    display_label="Error detecting disks - enter manually",
)
