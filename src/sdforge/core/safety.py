"""
sdforge Safety helpers.

Builds the human-readable plan shown before an operation starts, the
typed confirmation required before overwriting a device, and the warning
shown before cancelling an active copy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sdforge.core.models import Operation, OperationMode

if TYPE_CHECKING:
    from sdforge.platform.base import PlatformCapabilities

CANCEL_WARNING = (
    "WARNING: interrupting the copy tool mid-write can leave the destination "
    "in an inconsistent state. Confirm to terminate the copy anyway."
)


@dataclass
class ExecutionPlan:
    """Human-readable execution plan for an operation."""

    title: str
    source: str
    destination: str
    steps: list[str]
    warnings: list[str] = field(default_factory=list)
    confirmation_string: str | None = None

    def get_plan_text(self) -> str:
        """Get human-readable plan text."""
        lines = ["=" * 60]
        lines.append(self.title)
        lines.append(f"SOURCE: {self.source}")
        lines.append(f"DESTINATION: {self.destination}")
        lines.append("=" * 60)

        if self.warnings:
            lines.append("")
            lines.append("WARNINGS:")
            for warning in self.warnings:
                lines.append(f"   • {warning}")

        lines.append("")
        lines.append("EXECUTION STEPS:")
        for i, step in enumerate(self.steps, 1):
            lines.append(f"   {i}. {step}")

        if self.confirmation_string:
            lines.append("")
            lines.append("To proceed, type the following confirmation string:")
            lines.append(f"  {self.confirmation_string}")

        return "\n".join(lines)


def generate_confirmation_string(target_identifier: str) -> str:
    """Generate a confirmation string that includes the target identifier."""
    safe_target = re.sub(r"[^a-zA-Z0-9/_-]", "", target_identifier)
    return f"OVERWRITE-{safe_target.upper()}"


def verify_confirmation(target_identifier: str, user_input: str) -> bool:
    return user_input.strip() == generate_confirmation_string(target_identifier)


def create_execution_plan(
    operation: Operation,
    capabilities: PlatformCapabilities,
    shrink_enabled: bool = True,
) -> ExecutionPlan:
    """Describe the stages the controller will run for an operation."""
    steps = ["Validate elevated (sudo) access"]

    identifier = capabilities.disk_identifier(operation.unmount_target)
    if identifier and capabilities.unmount_command(identifier):
        steps.append(f"Unmount {identifier}")

    if operation.mode == OperationMode.BACKUP:
        steps.append(f"Check that {operation.source} exists")
        steps.append(f"Copy {operation.source} to {operation.destination}")
        if shrink_enabled:
            steps.append("Shrink the image (optional, failures are ignored)")
        return ExecutionPlan(
            title="BACKUP",
            source=operation.source,
            destination=operation.destination,
            steps=steps,
            warnings=["This will read the entire disk and may take a while."],
        )

    if operation.is_compressed_restore:
        steps.append(f"Decompress {operation.source} and write it to {operation.destination}")
    else:
        steps.append(f"Write {operation.source} to {operation.destination}")

    return ExecutionPlan(
        title="RESTORE (THIS WILL OVERWRITE THE TARGET DISK!)",
        source=operation.source,
        destination=operation.destination,
        steps=steps,
        warnings=[f"This will ERASE ALL DATA on {operation.destination}!"],
        confirmation_string=generate_confirmation_string(operation.destination),
    )
