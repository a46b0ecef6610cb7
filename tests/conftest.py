"""
Pytest configuration and fixtures for sdforge tests.
"""

import sys
import tempfile
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sdforge.core.runner import Command, ExitStatus, ProcessEvent  # noqa: E402
from sdforge.platform.linux import LinuxCapabilities  # noqa: E402
from sdforge.platform.macos import MacOSCapabilities  # noqa: E402


class FakeProcess:
    """Replays a scripted sequence of process events."""

    def __init__(self, events: Sequence[ProcessEvent]) -> None:
        self._events = list(events)
        self.terminated = False

    def events(self) -> Iterator[ProcessEvent]:
        yield from self._events

    def terminate(self, timeout: float = 5.0) -> None:
        self.terminated = True


class BlockingProcess(FakeProcess):
    """Emits its leading events, then blocks until terminated."""

    def __init__(self, events: Sequence[ProcessEvent] = ()) -> None:
        super().__init__(events)
        self.started = threading.Event()
        self.released = threading.Event()

    def events(self) -> Iterator[ProcessEvent]:
        yield from self._events
        self.started.set()
        self.released.wait(10)
        yield ExitStatus(-15 if self.terminated else 0)

    def terminate(self, timeout: float = 5.0) -> None:
        self.terminated = True
        self.released.set()


class FakeRunner:
    """
    Records every command and answers with scripted processes.

    Scripts are queued per program name; a program with nothing queued
    exits 0 without output.
    """

    def __init__(self) -> None:
        self.commands: list[Command] = []
        self.pipelines: list[tuple[Command, Command]] = []
        self._scripts: dict[str, list[FakeProcess]] = {}

    def script(self, program: str, *events: ProcessEvent) -> FakeProcess:
        process = FakeProcess(events)
        self.queue(program, process)
        return process

    def queue(self, program: str, process: FakeProcess) -> None:
        self._scripts.setdefault(program, []).append(process)

    @property
    def programs(self) -> list[str]:
        return [c.program for c in self.commands]

    def commands_for(self, program: str) -> list[Command]:
        return [c for c in self.commands if c.program == program]

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        elevate: bool = False,
        interactive: bool = False,
        detached: bool = False,
    ) -> FakeProcess:
        self.commands.append(Command(command, tuple(args), elevate, interactive, detached))
        return self._next(command)

    def run_pipeline(self, producer: Command, consumer: Command) -> FakeProcess:
        self.pipelines.append((producer, consumer))
        self.commands.extend([producer, consumer])
        return self._next(consumer.program)

    def _next(self, program: str) -> FakeProcess:
        queued = self._scripts.get(program)
        if queued:
            return queued.pop(0)
        return FakeProcess([ExitStatus(0)])


class UserMacOSCapabilities(MacOSCapabilities):
    """macOS capabilities for an unprivileged user."""

    def is_admin(self) -> bool:
        return False


class UserLinuxCapabilities(LinuxCapabilities):
    """Linux capabilities for an unprivileged user."""

    def is_admin(self) -> bool:
        return False


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir: Path) -> "SdForgeConfig":
    """Create a sample configuration for testing."""
    from sdforge.core.config import SdForgeConfig

    config = SdForgeConfig()
    config.logging.log_directory = temp_dir / "logs"
    config.logging.file_enabled = False
    config.shrink.tool_path = temp_dir / "pishrink.sh"
    config.ensure_directories()
    return config


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def macos_capabilities() -> MacOSCapabilities:
    return UserMacOSCapabilities()


@pytest.fixture
def linux_capabilities() -> LinuxCapabilities:
    return UserLinuxCapabilities()


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
