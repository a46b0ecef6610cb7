"""
sdforge Process Runner.

Spawns external commands and exposes their standard output and standard
error as an ordered stream of text chunks followed by a single result.
Chunks are delivered as soon as they are read and are not line-aligned.
"""

from __future__ import annotations

import codecs
import queue
import subprocess
import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import IO, cast

import psutil

from sdforge.core.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 4096


class Channel(Enum):
    """Output channel of a subprocess."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class Command:
    """An external command and whether it needs elevated privileges."""

    program: str
    args: tuple[str, ...] = ()
    elevate: bool = False
    interactive: bool = False
    detached: bool = False  # own process group, out of reach of terminal signals

    @property
    def inherits_stdin(self) -> bool:
        return (self.elevate or self.interactive) and not self.detached

    def __str__(self) -> str:
        return " ".join((self.program, *self.args))


@dataclass(frozen=True)
class Output:
    """A raw text chunk read from one channel.

    `stream` numbers the pipes of a pipeline so that two processes writing
    to the same channel can be told apart.
    """

    channel: Channel
    text: str
    stream: int = 0


@dataclass(frozen=True)
class ExitStatus:
    """Normal termination of a subprocess (or pipeline)."""

    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class LaunchFailure:
    """The executable could not be started at all."""

    message: str


ProcessResult = ExitStatus | LaunchFailure
ProcessEvent = Output | ExitStatus | LaunchFailure

_STREAM_CLOSED = object()


class RunningProcess:
    """Handle on a spawned process or two-process pipeline."""

    def __init__(
        self,
        processes: list[subprocess.Popen[bytes]],
        streams: list[tuple[Channel, IO[bytes]]],
        launch_failure: LaunchFailure | None = None,
    ) -> None:
        self._processes = processes
        self._queue: queue.Queue[object] = queue.Queue()
        self._launch_failure = launch_failure
        self._threads = [
            threading.Thread(
                target=self._pump,
                args=(channel, index, stream),
                name=f"pump-{channel.value}-{index}",
                daemon=True,
            )
            for index, (channel, stream) in enumerate(streams)
        ]
        for thread in self._threads:
            thread.start()

    @classmethod
    def failed(cls, message: str) -> RunningProcess:
        return cls([], [], LaunchFailure(message))

    @property
    def pids(self) -> list[int]:
        return [p.pid for p in self._processes]

    def _pump(self, channel: Channel, index: int, stream: IO[bytes]) -> None:
        # The queue is unbounded so a slow consumer never stalls the child
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = stream.read(CHUNK_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._queue.put(Output(channel, text, index))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put(Output(channel, tail, index))
        except (OSError, ValueError) as e:
            logger.debug("Output stream closed early", channel=channel.value, error=str(e))
        finally:
            stream.close()
            self._queue.put(_STREAM_CLOSED)

    def events(self) -> Iterator[ProcessEvent]:
        """
        Yield Output events in arrival order, then exactly one result.

        The effective exit status of a pipeline is that of its last process.
        """
        if self._launch_failure is not None:
            yield self._launch_failure
            return

        open_streams = len(self._threads)
        while open_streams:
            item = self._queue.get()
            if isinstance(item, Output):
                yield item
            else:
                open_streams -= 1

        for proc in self._processes:
            proc.wait()
        yield ExitStatus(self._processes[-1].returncode)

    def terminate(self, timeout: float = 5.0) -> None:
        """Terminate every process of the tree, killing stragglers after timeout."""
        targets: list[psutil.Process] = []
        for proc in self._processes:
            if proc.poll() is not None:
                continue
            try:
                parent = psutil.Process(proc.pid)
                targets.extend(parent.children(recursive=True))
                targets.append(parent)
            except psutil.NoSuchProcess:
                continue

        for target in targets:
            try:
                target.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                # Elevated children are reached through the sudo parent
                logger.debug("Could not terminate process", pid=target.pid, error=str(e))

        _, alive = psutil.wait_procs(targets, timeout=timeout)
        for target in alive:
            try:
                target.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug("Could not kill process", pid=target.pid, error=str(e))

        logger.info("Process tree terminated", pids=self.pids)


class ProcessRunner:
    """Launches commands, prefixing elevated ones with the privilege command."""

    def __init__(
        self,
        privilege_command: str = "sudo",
        is_admin: Callable[[], bool] | None = None,
    ) -> None:
        self.privilege_command = privilege_command
        self._is_admin = is_admin or (lambda: False)

    def argv(self, command: Command) -> list[str]:
        argv = [command.program, *command.args]
        if command.elevate and not self._is_admin():
            # A detached child has no terminal to prompt on, so it relies on
            # the credentials cached by the privilege check
            prefix = [self.privilege_command]
            if command.detached:
                prefix.append("-n")
            argv[:0] = prefix
        return argv

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        elevate: bool = False,
        interactive: bool = False,
        detached: bool = False,
    ) -> RunningProcess:
        """
        Run a single command.

        Elevated and interactive commands inherit standard input so a
        password prompt can be answered from the invoking terminal.
        Detached commands run in their own process group, so a Ctrl-C at
        the terminal reaches only sdforge, which decides whether to cancel.
        """
        return self.spawn(Command(command, tuple(args), elevate, interactive, detached))

    def _popen(
        self, command: Command, argv: list[str], stdin: IO[bytes] | int | None
    ) -> subprocess.Popen[bytes]:
        return subprocess.Popen(
            argv,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
            process_group=0 if command.detached else None,
        )

    def spawn(self, command: Command) -> RunningProcess:
        argv = self.argv(command)
        logger.debug("Spawning process", argv=argv, detached=command.detached)

        try:
            proc = self._popen(
                command, argv, None if command.inherits_stdin else subprocess.DEVNULL
            )
        except OSError as e:
            logger.warning("Process launch failed", argv=argv, error=str(e))
            return RunningProcess.failed(str(e))

        return RunningProcess(
            [proc],
            [
                (Channel.STDOUT, cast(IO[bytes], proc.stdout)),
                (Channel.STDERR, cast(IO[bytes], proc.stderr)),
            ],
        )

    def run_pipeline(self, producer: Command, consumer: Command) -> RunningProcess:
        """
        Run two commands connected by a single unidirectional byte stream.

        The producer's standard error and all of the consumer's output are
        reported, each pipe under its own stream index; the pipeline's exit
        status is the consumer's.
        """
        producer_argv = self.argv(producer)
        consumer_argv = self.argv(consumer)
        logger.debug("Spawning pipeline", producer=producer_argv, consumer=consumer_argv)

        try:
            upstream = self._popen(producer, producer_argv, subprocess.DEVNULL)
        except OSError as e:
            logger.warning("Process launch failed", argv=producer_argv, error=str(e))
            return RunningProcess.failed(str(e))

        upstream_out = cast(IO[bytes], upstream.stdout)
        upstream_err = cast(IO[bytes], upstream.stderr)
        try:
            downstream = self._popen(consumer, consumer_argv, upstream_out)
        except OSError as e:
            logger.warning("Process launch failed", argv=consumer_argv, error=str(e))
            upstream.kill()
            upstream.wait()
            upstream_out.close()
            upstream_err.close()
            return RunningProcess.failed(str(e))

        # Only the consumer holds the read end, so the producer sees SIGPIPE
        # if the consumer exits early
        upstream_out.close()

        return RunningProcess(
            [upstream, downstream],
            [
                (Channel.STDERR, upstream_err),
                (Channel.STDOUT, cast(IO[bytes], downstream.stdout)),
                (Channel.STDERR, cast(IO[bytes], downstream.stderr)),
            ],
        )
