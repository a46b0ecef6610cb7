"""
Tests for sdforge.cli.main module.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from conftest import FakeRunner, UserLinuxCapabilities

from sdforge.cli.main import cli
from sdforge.core.config import SdForgeConfig
from sdforge.core.controller import OperationController
from sdforge.core.models import Device
from sdforge.core.runner import Channel, ExitStatus, Output


@pytest.fixture
def config_file(sample_config: SdForgeConfig, temp_dir: Path) -> Path:
    path = temp_dir / "config.json"
    sample_config.save(path)
    return path


@pytest.fixture
def controller(sample_config: SdForgeConfig, fake_runner: FakeRunner) -> OperationController:
    sample_config.shrink.enabled = False
    return OperationController(
        config=sample_config,
        capabilities=UserLinuxCapabilities(),
        runner=fake_runner,
    )


class TestDevicesCommand:
    """Tests for the devices command."""

    def test_json_output(self, config_file: Path, controller: OperationController) -> None:
        device = Device("sdb", "/dev/sdb", "sdb - Reader (29.7 GiB)", removable=True)
        runner = CliRunner()

        with patch.object(controller.capabilities, "list_devices", return_value=[device]):
            result = runner.invoke(
                cli,
                ["--config", str(config_file), "--json", "devices"],
                obj={"controller": controller},
            )

        assert result.exit_code == 0
        assert json.loads(result.output) == [device.to_dict()]


class TestBackupCommand:
    """Tests for the backup command."""

    def test_backup_into_directory(
        self,
        config_file: Path,
        controller: OperationController,
        fake_runner: FakeRunner,
        temp_dir: Path,
    ) -> None:
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "backup", "/dev/sdb", str(temp_dir), "--yes"],
            obj={"controller": controller},
        )

        assert result.exit_code == 0
        assert "Backup saved to" in result.output
        assert "Validating access" in result.output
        dd = fake_runner.commands_for("dd")[0]
        assert f"of={temp_dir.resolve() / 'pi-backup.img'}" in dd.args

    def test_failed_backup_offers_retry(
        self,
        config_file: Path,
        controller: OperationController,
        fake_runner: FakeRunner,
        temp_dir: Path,
    ) -> None:
        fake_runner.script("sudo", ExitStatus(1))
        fake_runner.script("sudo", ExitStatus(1))
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "backup", "/dev/sdb", str(temp_dir), "--yes"],
            input="retry\nexit\n",
            obj={"controller": controller},
        )

        assert result.exit_code == 1
        assert result.output.count("Backup failed") == 2
        assert fake_runner.programs == ["sudo", "sudo"]

    def test_quiet_backup_reports_only_the_result(
        self,
        config_file: Path,
        controller: OperationController,
        fake_runner: FakeRunner,
        temp_dir: Path,
    ) -> None:
        fake_runner.script(
            "dd",
            Output(Channel.STDERR, "1048576 bytes (1.0 MB, 1.0 MiB) copied, 1 s, 1.0 MB/s\n"),
            ExitStatus(0),
        )
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "--quiet", "backup", "/dev/sdb", str(temp_dir), "--yes"],
            obj={"controller": controller},
        )

        assert result.exit_code == 0
        assert "Backup saved to" in result.output
        assert "Validating access" not in result.output
        assert "Copied" not in result.output


class TestRestoreCommand:
    """Tests for the restore command."""

    def test_rejects_unknown_image_type(
        self, config_file: Path, controller: OperationController, temp_dir: Path
    ) -> None:
        image = temp_dir / "notes.txt"
        image.write_text("hello")
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "restore", str(image), "/dev/sdb"],
            obj={"controller": controller},
        )

        assert result.exit_code == 1
        assert "Not a recognized image" in result.output

    def test_wrong_confirmation_aborts(
        self,
        config_file: Path,
        controller: OperationController,
        fake_runner: FakeRunner,
        temp_dir: Path,
    ) -> None:
        image = temp_dir / "pi.img.gz"
        image.write_bytes(b"\x1f\x8b")
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "restore", str(image), "/dev/sdb"],
            input="yes\n",
            obj={"controller": controller},
        )

        assert result.exit_code == 1
        assert "Confirmation failed" in result.output
        assert fake_runner.commands == []

    def test_confirmed_restore_runs_pipeline(
        self,
        config_file: Path,
        controller: OperationController,
        fake_runner: FakeRunner,
        temp_dir: Path,
    ) -> None:
        image = temp_dir / "pi.img.gz"
        image.write_bytes(b"\x1f\x8b")
        runner = CliRunner()

        result = runner.invoke(
            cli,
            ["--config", str(config_file), "restore", str(image), "/dev/sdb"],
            input="OVERWRITE-/DEV/SDB\n",
            obj={"controller": controller},
        )

        assert result.exit_code == 0
        assert "Image written to /dev/sdb" in result.output
        producer, consumer = fake_runner.pipelines[0]
        assert producer.program == "gzip"
        assert consumer.program == "dd"
