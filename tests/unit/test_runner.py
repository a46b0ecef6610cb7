"""
Tests for sdforge.core.runner module.

Spawns real Python subprocesses, so no privileges are needed.
"""

import os
import sys

import pytest

from sdforge.core.runner import (
    Channel,
    Command,
    ExitStatus,
    LaunchFailure,
    Output,
    ProcessRunner,
)

PYTHON = sys.executable


def collect(process) -> tuple[dict[Channel, str], object]:
    """Join output per channel and return it with the final result."""
    text: dict[Channel, str] = {Channel.STDOUT: "", Channel.STDERR: ""}
    results = []
    for event in process.events():
        if isinstance(event, Output):
            text[event.channel] += event.text
        else:
            results.append(event)
    assert len(results) == 1
    return text, results[0]


class TestCommand:
    """Tests for Command."""

    def test_str(self) -> None:
        assert str(Command("dd", ("if=/dev/sdb", "of=out.img"))) == "dd if=/dev/sdb of=out.img"

    def test_elevated_inherits_stdin(self) -> None:
        assert Command("dd", elevate=True).inherits_stdin is True
        assert Command("sudo", ("-v",), interactive=True).inherits_stdin is True
        assert Command("diskutil").inherits_stdin is False

    def test_detached_never_inherits_stdin(self) -> None:
        assert Command("dd", elevate=True, detached=True).inherits_stdin is False


class TestProcessRunner:
    """Tests for ProcessRunner."""

    def test_argv_adds_privilege_prefix(self) -> None:
        runner = ProcessRunner(privilege_command="sudo", is_admin=lambda: False)
        assert runner.argv(Command("dd", ("if=x",), elevate=True)) == ["sudo", "dd", "if=x"]
        assert runner.argv(Command("diskutil", ("list",))) == ["diskutil", "list"]

    def test_argv_without_prefix_for_admin(self) -> None:
        runner = ProcessRunner(privilege_command="sudo", is_admin=lambda: True)
        assert runner.argv(Command("dd", ("if=x",), elevate=True)) == ["dd", "if=x"]

    def test_detached_elevation_never_prompts(self) -> None:
        runner = ProcessRunner(privilege_command="sudo", is_admin=lambda: False)
        command = Command("dd", ("if=x",), elevate=True, detached=True)
        assert runner.argv(command) == ["sudo", "-n", "dd", "if=x"]

    def test_detached_process_gets_own_group(self) -> None:
        runner = ProcessRunner()
        process = runner.run(
            PYTHON, ["-c", "import os; print(os.getpgid(0))"], detached=True
        )

        text, result = collect(process)

        assert result == ExitStatus(0)
        assert int(text[Channel.STDOUT]) == process.pids[0]
        assert int(text[Channel.STDOUT]) != os.getpgrp()

    def test_attached_process_shares_group(self) -> None:
        runner = ProcessRunner()
        process = runner.run(PYTHON, ["-c", "import os; print(os.getpgid(0))"])

        text, _ = collect(process)

        assert int(text[Channel.STDOUT]) == os.getpgrp()

    def test_run_collects_both_channels(self) -> None:
        runner = ProcessRunner()
        process = runner.run(
            PYTHON,
            ["-c", "import sys; sys.stdout.write('out'); sys.stderr.write('err'); sys.exit(3)"],
        )

        text, result = collect(process)

        assert text[Channel.STDOUT] == "out"
        assert text[Channel.STDERR] == "err"
        assert result == ExitStatus(3)
        assert not result.success

    def test_launch_failure(self) -> None:
        runner = ProcessRunner()
        events = list(runner.run("/nonexistent/sdforge-tool").events())

        assert len(events) == 1
        assert isinstance(events[0], LaunchFailure)

    def test_invalid_utf8_is_replaced(self) -> None:
        runner = ProcessRunner()
        process = runner.run(
            PYTHON, ["-c", "import sys; sys.stderr.buffer.write(b'bad \\xff byte')"]
        )

        text, result = collect(process)

        assert text[Channel.STDERR] == "bad \ufffd byte"
        assert result == ExitStatus(0)

    def test_pipeline_streams_producer_into_consumer(self) -> None:
        runner = ProcessRunner()
        producer = Command(PYTHON, ("-c", "print('hello')"))
        consumer = Command(
            PYTHON, ("-c", "import sys; sys.stdout.write(sys.stdin.read().upper())")
        )

        text, result = collect(runner.run_pipeline(producer, consumer))

        assert text[Channel.STDOUT] == "HELLO\n"
        assert result == ExitStatus(0)

    def test_pipeline_exit_status_is_consumers(self) -> None:
        runner = ProcessRunner()
        producer = Command(PYTHON, ("-c", "print('data')"))
        consumer = Command(PYTHON, ("-c", "import sys; sys.stdin.read(); sys.exit(5)"))

        _, result = collect(runner.run_pipeline(producer, consumer))

        assert result == ExitStatus(5)

    def test_pipeline_reports_producer_stderr(self) -> None:
        runner = ProcessRunner()
        producer = Command(PYTHON, ("-c", "import sys; sys.stderr.write('gzip: bad')"))
        consumer = Command(PYTHON, ("-c", "import sys; sys.stdin.read()"))

        text, _ = collect(runner.run_pipeline(producer, consumer))

        assert "gzip: bad" in text[Channel.STDERR]

    def test_pipeline_stderr_streams_are_numbered(self) -> None:
        runner = ProcessRunner()
        producer = Command(PYTHON, ("-c", "import sys; sys.stderr.write('upstream')"))
        consumer = Command(
            PYTHON, ("-c", "import sys; sys.stdin.read(); sys.stderr.write('downstream')")
        )

        by_stream: dict[int, str] = {}
        for event in runner.run_pipeline(producer, consumer).events():
            if isinstance(event, Output) and event.channel == Channel.STDERR:
                by_stream[event.stream] = by_stream.get(event.stream, "") + event.text

        assert sorted(by_stream.values()) == ["downstream", "upstream"]

    def test_pipeline_consumer_launch_failure(self) -> None:
        runner = ProcessRunner()
        producer = Command(PYTHON, ("-c", "print('data')"))
        consumer = Command("/nonexistent/sdforge-tool")

        events = list(runner.run_pipeline(producer, consumer).events())

        assert len(events) == 1
        assert isinstance(events[0], LaunchFailure)

    @pytest.mark.slow
    def test_terminate_stops_process(self) -> None:
        runner = ProcessRunner()
        process = runner.run(
            PYTHON,
            ["-c", "import sys, time; sys.stdout.write('ready'); sys.stdout.flush(); time.sleep(60)"],
        )

        events = process.events()
        first = next(events)
        assert isinstance(first, Output)

        process.terminate(timeout=2.0)
        rest = list(events)

        assert isinstance(rest[-1], ExitStatus)
        assert rest[-1].exit_code != 0
