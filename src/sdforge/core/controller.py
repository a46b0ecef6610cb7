"""
sdforge Operation Controller.

Drives the backup pipeline (validate, unmount, copy, shrink) and the
restore pipeline (validate, unmount, copy). The state machine itself is the
pure function `advance`; `OperationController` is the effect boundary that
runs subprocesses, interprets their output and feeds triggers into it.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import replace
from enum import Enum, auto
from typing import TypeVar

from sdforge.core.config import SdForgeConfig
from sdforge.core.errors import (
    CopyFailure,
    ImagingError,
    InvalidTransitionError,
    OperationCancelled,
    OperationInProgressError,
    PrivilegeError,
    ShrinkUnavailable,
    ShrinkWarning,
    SourceUnavailableError,
    StageWarning,
    UnmountWarning,
)
from sdforge.core.logging import OperationLogger, get_logger
from sdforge.core.models import (
    Failure,
    Metrics,
    Operation,
    OperationMode,
    OperationState,
    Success,
    TerminalResult,
)
from sdforge.core.runner import (
    Channel,
    Command,
    ExitStatus,
    LaunchFailure,
    Output,
    ProcessResult,
    ProcessRunner,
    RunningProcess,
)
from sdforge.core.safety import CANCEL_WARNING
from sdforge.platform.base import PlatformCapabilities
from sdforge.platform.parsers import ProgressInfo, parse_progress, split_lines

logger = get_logger(__name__)

T = TypeVar("T")


class Trigger(Enum):
    """Events that move an operation between states."""

    START = auto()
    PRIVILEGE_GRANTED = auto()
    PRIVILEGE_DENIED = auto()
    SOURCE_UNAVAILABLE = auto()
    UNMOUNT_FINISHED = auto()
    COPY_SUCCEEDED = auto()
    COPY_FAILED = auto()
    SHRINK_SUCCEEDED = auto()
    SHRINK_FAILED = auto()
    SHRINK_UNAVAILABLE = auto()
    SHRINK_SKIPPED = auto()
    CANCELLED = auto()
    ABORTED = auto()
    RETRY = auto()
    RESET = auto()


class CancelOutcome(Enum):
    """Result of a cancellation request."""

    NOT_RUNNING = auto()
    CONFIRMATION_REQUIRED = auto()
    CANCELLED = auto()


S = OperationState
_BACKUP = OperationMode.BACKUP
_RESTORE = OperationMode.RESTORE

# (state, trigger, mode or None for any mode) -> next state
TRANSITIONS: dict[tuple[OperationState, Trigger, OperationMode | None], OperationState] = {
    (S.IDLE, Trigger.START, None): S.VALIDATING,
    (S.VALIDATING, Trigger.PRIVILEGE_GRANTED, None): S.UNMOUNTING,
    (S.VALIDATING, Trigger.PRIVILEGE_DENIED, None): S.ERRORED,
    (S.UNMOUNTING, Trigger.SOURCE_UNAVAILABLE, _BACKUP): S.ERRORED,
    (S.UNMOUNTING, Trigger.UNMOUNT_FINISHED, None): S.COPYING,
    (S.COPYING, Trigger.COPY_SUCCEEDED, _BACKUP): S.SHRINKING,
    (S.COPYING, Trigger.COPY_SUCCEEDED, _RESTORE): S.COMPLETED,
    (S.COPYING, Trigger.COPY_FAILED, None): S.ERRORED,
    (S.ERRORED, Trigger.RETRY, None): S.VALIDATING,
    (S.COMPLETED, Trigger.RESET, None): S.IDLE,
    (S.ERRORED, Trigger.RESET, None): S.IDLE,
}

# Shrinking is optional: every way out of it completes the operation
for _trigger in (
    Trigger.SHRINK_SUCCEEDED,
    Trigger.SHRINK_FAILED,
    Trigger.SHRINK_UNAVAILABLE,
    Trigger.SHRINK_SKIPPED,
):
    TRANSITIONS[(S.SHRINKING, _trigger, _BACKUP)] = S.COMPLETED

for _state in (S.VALIDATING, S.UNMOUNTING, S.COPYING, S.SHRINKING):
    TRANSITIONS[(_state, Trigger.CANCELLED, None)] = S.ERRORED
    TRANSITIONS[(_state, Trigger.ABORTED, None)] = S.ERRORED


def advance(operation: Operation, trigger: Trigger, reason: str | None = None) -> Operation:
    """
    Apply a trigger to an operation and return the updated operation.

    Raises InvalidTransitionError when the trigger is not allowed in the
    operation's current state and mode.
    """
    target = TRANSITIONS.get((operation.state, trigger, operation.mode))
    if target is None:
        target = TRANSITIONS.get((operation.state, trigger, None))
    if target is None:
        raise InvalidTransitionError(operation.state, trigger)

    if trigger in (Trigger.START, Trigger.RETRY, Trigger.RESET):
        operation = replace(
            operation,
            metrics=Metrics(),
            recent_log=(),
            last_error_text="",
            warnings=(),
            terminal_result=None,
        )

    if target == S.COPYING:
        operation = operation.reset_for_stage()

    terminal: TerminalResult | None = None
    if target == S.ERRORED:
        terminal = Failure(reason or "unknown error")
    elif target == S.COMPLETED:
        terminal = Success(final_path=operation.destination)

    return replace(operation, state=target, terminal_result=terminal)


FAILURE_TRIGGERS: dict[type[ImagingError], Trigger] = {
    PrivilegeError: Trigger.PRIVILEGE_DENIED,
    SourceUnavailableError: Trigger.SOURCE_UNAVAILABLE,
    CopyFailure: Trigger.COPY_FAILED,
    OperationCancelled: Trigger.CANCELLED,
}


class _LineAssembler:
    """Reassembles complete lines from arbitrarily split output chunks.

    Each pipe keeps its own buffer, so a pipeline's two stderr streams never
    splice into one line.
    """

    def __init__(self) -> None:
        self._buffers: dict[tuple[Channel, int], str] = {}

    def feed(self, output: Output) -> list[str]:
        key = (output.channel, output.stream)
        lines, rest = split_lines(self._buffers.get(key, "") + output.text)
        self._buffers[key] = rest
        return lines

    def pending(self, output: Output) -> str:
        """The partial line left over on the stream of `output`."""
        return self._buffers.get((output.channel, output.stream), "")

    def flush(self) -> list[tuple[Channel, str]]:
        pending = [(channel, text) for (channel, _), text in self._buffers.items() if text]
        self._buffers.clear()
        return pending


class OperationController:
    """
    Runs one imaging operation at a time and reports its progress.

    Listeners receive state changes, metrics, log lines and the terminal
    result. Listener errors are logged and never affect the pipeline.
    """

    def __init__(
        self,
        config: SdForgeConfig | None = None,
        capabilities: PlatformCapabilities | None = None,
        runner: ProcessRunner | None = None,
    ) -> None:
        if capabilities is None:
            from sdforge.platform import get_platform_capabilities

            capabilities = get_platform_capabilities()

        self.config = config or SdForgeConfig()
        self.capabilities = capabilities
        self.runner = runner or ProcessRunner(
            privilege_command=self.config.controller.privilege_command,
            is_admin=capabilities.is_admin,
        )

        self._operation: Operation | None = None
        self._lock = threading.Lock()
        self._busy = False
        self._cancel_requested = threading.Event()
        self._active_process: RunningProcess | None = None
        self._thread: threading.Thread | None = None

        self._state_callbacks: list[Callable[[OperationState], None]] = []
        self._metrics_callbacks: list[Callable[[Metrics], None]] = []
        self._log_callbacks: list[Callable[[str], None]] = []
        self._terminal_callbacks: list[Callable[[TerminalResult], None]] = []

    # ==================== Public API ====================

    @property
    def operation(self) -> Operation | None:
        """Snapshot of the current (or last) operation."""
        with self._lock:
            return self._operation

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def start(self, mode: OperationMode, source: str, destination: str) -> Operation:
        """Run a full pipeline in the calling thread and return the final operation."""
        operation = self._claim_new(mode, source, destination)
        return self._run(operation)

    def start_async(self, mode: OperationMode, source: str, destination: str) -> threading.Thread:
        """Run a full pipeline on a worker thread."""
        operation = self._claim_new(mode, source, destination)
        return self._spawn_worker(operation)

    def retry(self) -> Operation:
        """Rerun an errored operation from validation with the same inputs."""
        return self._run(self._claim_retry())

    def retry_async(self) -> threading.Thread:
        return self._spawn_worker(self._claim_retry())

    def wait(self, timeout: float | None = None) -> Operation | None:
        """Wait for the worker thread started by start_async/retry_async."""
        thread = self._thread
        if thread:
            thread.join(timeout)
        return self.operation

    def reset(self) -> None:
        """Return a finished operation to Idle so selection can start over."""
        with self._lock:
            if self._busy or self._operation is None:
                return
            self._operation = advance(self._operation, Trigger.RESET)
        self._notify(self._state_callbacks, OperationState.IDLE)

    def cancel(self, confirmed: bool = False) -> CancelOutcome:
        """
        Request cancellation of the active operation.

        While a copy or shrink is running the request only takes effect
        once confirmed, since terminating the copy tool mid-write can leave
        the destination inconsistent.
        """
        with self._lock:
            operation = self._operation
            if not self._busy or operation is None or not operation.state.is_active:
                return CancelOutcome.NOT_RUNNING
            state = operation.state

        if state in (OperationState.COPYING, OperationState.SHRINKING) and not confirmed:
            logger.warning("Cancellation requires confirmation", state=state.value)
            self._log(CANCEL_WARNING)
            return CancelOutcome.CONFIRMATION_REQUIRED

        logger.warning("Cancellation requested", state=state.value)
        self._cancel_requested.set()
        process = self._active_process
        if process is not None:
            process.terminate()
        return CancelOutcome.CANCELLED

    def add_state_callback(self, callback: Callable[[OperationState], None]) -> None:
        self._state_callbacks.append(callback)

    def add_metrics_callback(self, callback: Callable[[Metrics], None]) -> None:
        self._metrics_callbacks.append(callback)

    def add_log_callback(self, callback: Callable[[str], None]) -> None:
        self._log_callbacks.append(callback)

    def add_terminal_callback(self, callback: Callable[[TerminalResult], None]) -> None:
        self._terminal_callbacks.append(callback)

    # ==================== Lifecycle ====================

    def _claim_new(self, mode: OperationMode, source: str, destination: str) -> Operation:
        operation = Operation(
            mode=mode,
            source=source,
            destination=destination,
            log_capacity=self.config.controller.log_lines,
        )
        with self._lock:
            if self._busy:
                raise OperationInProgressError("An operation is already running")
            self._busy = True
            self._cancel_requested.clear()
        return advance(operation, Trigger.START)

    def _claim_retry(self) -> Operation:
        with self._lock:
            if self._busy:
                raise OperationInProgressError("An operation is already running")
            if self._operation is None or self._operation.state != OperationState.ERRORED:
                state = self._operation.state if self._operation else OperationState.IDLE
                raise InvalidTransitionError(state, Trigger.RETRY)
            self._busy = True
            self._cancel_requested.clear()
            return advance(self._operation, Trigger.RETRY)

    def _spawn_worker(self, operation: Operation) -> threading.Thread:
        thread = threading.Thread(
            target=self._run,
            args=(operation,),
            name=f"{operation.mode.value}-pipeline",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def _run(self, operation: Operation) -> Operation:
        with self._lock:
            self._operation = operation
        self._notify(self._state_callbacks, operation.state)
        logger.info(
            "Operation started",
            mode=operation.mode.value,
            source=operation.source,
            destination=operation.destination,
        )

        try:
            self._validate()
            self._unmount()
            self._copy()
            if operation.mode == OperationMode.BACKUP:
                self._shrink()
        except ImagingError as e:
            self._fail(e)
        except Exception as e:
            logger.exception("Unexpected pipeline error", error=str(e))
            self._advance(Trigger.ABORTED, reason=f"unexpected error: {e}")
        finally:
            with self._lock:
                self._busy = False
                self._active_process = None
                final = self._operation
            self._cancel_requested.clear()

        if final is None or final.terminal_result is None:
            raise RuntimeError("Pipeline ended without a terminal result")
        logger.info("Operation finished", **final.to_dict())
        self._notify(self._terminal_callbacks, final.terminal_result)
        return final

    def _fail(self, error: ImagingError) -> None:
        trigger = FAILURE_TRIGGERS[type(error)]
        logger.error("Operation failed", error_type=type(error).__name__, reason=error.reason)
        self._advance(trigger, reason=error.reason)

    # ==================== Stages ====================

    def _validate(self) -> None:
        controller_config = self.config.controller
        if controller_config.skip_privilege_check_as_root and self.capabilities.is_admin():
            self._log("Running as root, skipping sudo validation")
            self._advance(Trigger.PRIVILEGE_GRANTED)
            return

        self._log("Validating sudo access...")
        process = self.runner.run(controller_config.privilege_command, ["-v"], interactive=True)
        result = self._execute(process)

        if isinstance(result, LaunchFailure):
            raise PrivilegeError(f"authentication failed: {result.message}")
        if not result.success:
            raise PrivilegeError(
                f"{controller_config.privilege_command} authentication failed. "
                "Please run with sudo access."
            )
        self._advance(Trigger.PRIVILEGE_GRANTED)

    def _unmount(self) -> None:
        self._check_cancelled()
        operation = self._current()
        identifier = self.capabilities.disk_identifier(operation.unmount_target)
        command = self.capabilities.unmount_command(identifier) if identifier else None

        if command is None:
            logger.debug("Unmount skipped", target=operation.unmount_target)
        else:
            try:
                self._unmount_disk(identifier or "", command)
            except UnmountWarning as w:
                self._warn(w)

        if operation.mode == OperationMode.BACKUP:
            self._check_source(operation.source)

        self._advance(Trigger.UNMOUNT_FINISHED)

    def _unmount_disk(self, identifier: str, command: list[str]) -> None:
        self._log(f"Unmounting {identifier}...")
        errors: list[str] = []

        def collect(channel: Channel, line: str) -> None:
            if channel == Channel.STDERR:
                errors.append(line.strip())

        result = self._execute(self.runner.run(command[0], command[1:]), collect)

        if isinstance(result, LaunchFailure):
            raise UnmountWarning(f"Unmount skipped: {result.message}")
        if not result.success:
            detail = " ".join(e for e in errors if e) or "disk may already be unmounted"
            raise UnmountWarning(f"Unmount warning: {detail}")
        self._log("Disk unmounted successfully")

    def _check_source(self, source: str) -> None:
        self._log("Checking source device...")
        result = self._execute(
            self.runner.run(self.capabilities.TEST, ["-e", source], elevate=True, detached=True)
        )
        if isinstance(result, LaunchFailure):
            raise SourceUnavailableError(f"Cannot access source: {result.message}")
        if not result.success:
            raise SourceUnavailableError(f"Source device not found: {source}")

    def _copy(self) -> None:
        self._check_cancelled()
        operation = self._current()
        copy_config = self.config.copy_stage
        tool = self.capabilities.COPY_TOOL
        decompress = (
            self.capabilities.decompress_command(operation.source)
            if operation.is_compressed_restore
            else None
        )

        with OperationLogger(
            "copy",
            logger,
            source=operation.source,
            destination=operation.destination,
            compressed=decompress is not None,
        ):
            if decompress:
                self._log("Decompressing and writing image...")
                producer = Command(decompress[0], tuple(decompress[1:]), detached=True)
                consumer = Command(
                    tool,
                    tuple(
                        self.capabilities.copy_args(
                            None,
                            operation.destination,
                            copy_config.block_size_mb,
                            copy_config.fsync,
                        )
                    ),
                    elevate=True,
                    detached=True,
                )
                process = self.runner.run_pipeline(producer, consumer)
            else:
                verb = "backup" if operation.mode == OperationMode.BACKUP else "restore"
                self._log(f"Starting {verb} from {operation.source} to {operation.destination}")
                args = self.capabilities.copy_args(
                    operation.source,
                    operation.destination,
                    copy_config.block_size_mb,
                    copy_config.fsync,
                )
                process = self.runner.run(tool, args, elevate=True, detached=True)

            result = self._execute(process, self._handle_copy_line, self._handle_copy_progress)

            if isinstance(result, LaunchFailure):
                raise CopyFailure(f"Failed to start {tool}: {result.message}")
            if not result.success:
                reason = self._current().last_error_text or f"exit code {result.exit_code}"
                raise CopyFailure(reason, exit_code=result.exit_code)

        if operation.mode == OperationMode.BACKUP:
            self._log("Backup complete! Starting shrink...")
        else:
            self._log("Restore complete!")
        self._advance(Trigger.COPY_SUCCEEDED)

    def _handle_copy_line(self, channel: Channel, line: str) -> None:
        # Only stderr carries progress and diagnostics from the copy tool
        if channel != Channel.STDERR:
            return

        info = parse_progress(line)
        if info.is_error_line:
            with self._lock:
                self._operation = self._current_locked().with_error_text(line.strip())
        self._merge_metrics(info)

    def _handle_copy_progress(self, channel: Channel, partial: str) -> None:
        # A progress line redrawn with a bare carriage return is only
        # terminated by the next redraw, so read its metrics early
        if channel == Channel.STDERR:
            self._merge_metrics(parse_progress(partial))

    def _merge_metrics(self, info: ProgressInfo) -> None:
        if info.bytes is None and not info.rate_text:
            return

        with self._lock:
            operation = self._current_locked()
            previous = operation.metrics
            updated = previous.merge(info.bytes, info.rate_text)
            self._operation = operation.with_metrics(updated)

        if updated != previous:
            self._notify(self._metrics_callbacks, updated)

    def _shrink(self) -> None:
        self._check_cancelled()
        shrink_config = self.config.shrink
        if not shrink_config.enabled:
            self._log("Shrink disabled - image saved without shrinking")
            self._advance(Trigger.SHRINK_SKIPPED)
            return

        try:
            self._ensure_shrink_tool()
            self._run_shrink()
        except ShrinkUnavailable as w:
            self._warn(w)
            trigger = Trigger.SHRINK_UNAVAILABLE
        except ShrinkWarning as w:
            self._warn(w)
            trigger = Trigger.SHRINK_FAILED
        else:
            self._log("Shrink complete!")
            trigger = Trigger.SHRINK_SUCCEEDED

        self._advance(trigger)

    def _ensure_shrink_tool(self) -> None:
        shrink_config = self.config.shrink
        tool_path = str(shrink_config.tool_path)
        if shrink_config.tool_path.exists():
            return

        self._log("pishrink not found, downloading...")
        logger.info("Fetching shrink tool", url=shrink_config.download_url, path=tool_path)

        fetch = self._execute(
            self.runner.run(
                self.capabilities.CURL,
                ["-fsSL", shrink_config.download_url, "-o", tool_path],
                elevate=True,
                detached=True,
            )
        )
        if not isinstance(fetch, ExitStatus) or not fetch.success:
            raise ShrinkUnavailable("Could not download pishrink - image saved without shrinking")

        chmod = self._execute(
            self.runner.run(
                self.capabilities.CHMOD, ["+x", tool_path], elevate=True, detached=True
            )
        )
        if not isinstance(chmod, ExitStatus) or not chmod.success:
            raise ShrinkUnavailable("Could not install pishrink - image saved without shrinking")

    def _run_shrink(self) -> None:
        shrink_config = self.config.shrink
        operation = self._current()
        self._log("Running pishrink to compress image...")

        args = [str(shrink_config.tool_path)]
        if shrink_config.verbose:
            args.append("-v")
        args.append(operation.destination)

        result = self._execute(
            self.runner.run(self.capabilities.SHELL, args, elevate=True, detached=True)
        )

        if isinstance(result, LaunchFailure):
            raise ShrinkWarning(
                f"pishrink not available: {result.message} - image saved without shrinking"
            )
        if not result.success:
            raise ShrinkWarning(
                f"pishrink exited with code {result.exit_code} - image saved without shrinking"
            )

    # ==================== Helpers ====================

    def _execute(
        self,
        process: RunningProcess,
        on_line: Callable[[Channel, str], None] | None = None,
        on_partial: Callable[[Channel, str], None] | None = None,
    ) -> ProcessResult:
        """
        Drain a process's events, logging every line, and return its result.

        `on_partial` sees the unterminated tail of a stream after each chunk.

        Raises OperationCancelled if cancellation was requested while the
        process was running.
        """
        with self._lock:
            self._active_process = process
        if self._cancel_requested.is_set():
            process.terminate()

        assembler = _LineAssembler()
        result: ProcessResult | None = None

        for event in process.events():
            if isinstance(event, Output):
                for line in assembler.feed(event):
                    self._handle_line(event.channel, line, on_line)
                partial = assembler.pending(event)
                if on_partial is not None and partial.strip():
                    on_partial(event.channel, partial)
            else:
                result = event

        for channel, line in assembler.flush():
            self._handle_line(channel, line, on_line)

        with self._lock:
            self._active_process = None

        if self._cancel_requested.is_set():
            raise OperationCancelled()

        if result is None:
            raise RuntimeError("Process ended without a result")
        return result

    def _handle_line(
        self,
        channel: Channel,
        line: str,
        on_line: Callable[[Channel, str], None] | None,
    ) -> None:
        if not line.strip():
            return
        self._log(line)
        if on_line is not None:
            on_line(channel, line)

    def _check_cancelled(self) -> None:
        if self._cancel_requested.is_set():
            raise OperationCancelled()

    def _current(self) -> Operation:
        with self._lock:
            return self._current_locked()

    def _current_locked(self) -> Operation:
        if self._operation is None:
            raise RuntimeError("No operation in progress")
        return self._operation

    def _advance(self, trigger: Trigger, reason: str | None = None) -> None:
        with self._lock:
            operation = self._current_locked()
            previous = operation.state
            self._operation = advance(operation, trigger, reason)
            state = self._operation.state

        logger.info(
            "State changed",
            trigger=trigger.name,
            previous=previous.value,
            state=state.value,
        )
        if state == OperationState.COPYING:
            self._notify(self._metrics_callbacks, Metrics())
        self._notify(self._state_callbacks, state)

    def _log(self, message: str) -> None:
        line = message.strip()[: self.config.controller.log_line_width]
        if not line:
            return
        with self._lock:
            if self._operation is not None:
                self._operation = self._operation.with_log(line)
        self._notify(self._log_callbacks, line)

    def _warn(self, warning: StageWarning) -> None:
        message = str(warning)
        logger.warning(type(warning).__name__, message=message)
        with self._lock:
            self._operation = self._current_locked().with_warning(message)
        self._log(message)

    def _notify(self, callbacks: list[Callable[[T], None]], value: T) -> None:
        for callback in callbacks:
            try:
                callback(value)
            except Exception as e:
                logger.warning("Listener callback error", error=str(e))
