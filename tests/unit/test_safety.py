"""
Tests for sdforge.core.safety module.
"""

from sdforge.core.models import Operation, OperationMode
from sdforge.core.safety import (
    ExecutionPlan,
    create_execution_plan,
    generate_confirmation_string,
    verify_confirmation,
)
from sdforge.platform.base import PlatformCapabilities


class TestConfirmation:
    """Tests for confirmation strings."""

    def test_includes_target(self) -> None:
        assert generate_confirmation_string("/dev/rdisk4") == "OVERWRITE-/DEV/RDISK4"

    def test_strips_unsafe_characters(self) -> None:
        assert generate_confirmation_string("/dev/sd b;") == "OVERWRITE-/DEV/SDB"

    def test_verify(self) -> None:
        assert verify_confirmation("/dev/sdb", "OVERWRITE-/DEV/SDB")
        assert verify_confirmation("/dev/sdb", "  OVERWRITE-/DEV/SDB  ")
        assert not verify_confirmation("/dev/sdb", "overwrite-/dev/sdb")
        assert not verify_confirmation("/dev/sdb", "")


class TestExecutionPlan:
    """Tests for ExecutionPlan."""

    def test_plan_text(self) -> None:
        plan = ExecutionPlan(
            title="RESTORE",
            source="/tmp/in.img",
            destination="/dev/sdb",
            steps=["Step 1", "Step 2"],
            warnings=["Warning 1"],
            confirmation_string="OVERWRITE-/DEV/SDB",
        )

        text = plan.get_plan_text()

        assert "RESTORE" in text
        assert "SOURCE: /tmp/in.img" in text
        assert "1. Step 1" in text
        assert "Warning 1" in text
        assert "OVERWRITE-/DEV/SDB" in text

    def test_backup_plan(self, macos_capabilities: PlatformCapabilities) -> None:
        op = Operation(OperationMode.BACKUP, "/dev/rdisk9", "/tmp/out.img")

        plan = create_execution_plan(op, macos_capabilities, shrink_enabled=True)

        assert plan.title == "BACKUP"
        assert plan.confirmation_string is None
        assert "Unmount disk9" in plan.steps
        assert any("Shrink" in step for step in plan.steps)

    def test_backup_plan_without_shrink(self, linux_capabilities: PlatformCapabilities) -> None:
        op = Operation(OperationMode.BACKUP, "/dev/sdb", "/tmp/out.img")

        plan = create_execution_plan(op, linux_capabilities, shrink_enabled=False)

        assert not any("Shrink" in step for step in plan.steps)
        assert not any("Unmount" in step for step in plan.steps)

    def test_restore_plan_requires_confirmation(
        self, macos_capabilities: PlatformCapabilities
    ) -> None:
        op = Operation(OperationMode.RESTORE, "/tmp/in.img.gz", "/dev/rdisk9")

        plan = create_execution_plan(op, macos_capabilities)

        assert "OVERWRITE" in plan.title
        assert plan.confirmation_string == "OVERWRITE-/DEV/RDISK9"
        assert any(step.startswith("Decompress") for step in plan.steps)
