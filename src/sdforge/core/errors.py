"""Exception hierarchy for imaging operations.

Exception Hierarchy:
    ImagingError (fatal, ends the operation in Errored)
        ├── PrivilegeError
        ├── SourceUnavailableError
        ├── CopyFailure
        └── OperationCancelled
    StageWarning (non-fatal, logged and the pipeline continues)
        ├── UnmountWarning
        ├── ShrinkWarning
        └── ShrinkUnavailable
    OperationInProgressError
    InvalidTransitionError
"""

from __future__ import annotations


class ImagingError(Exception):
    """Base exception for fatal pipeline failures."""

    @property
    def reason(self) -> str:
        return str(self)


class PrivilegeError(ImagingError):
    """Elevated access could not be obtained."""


class SourceUnavailableError(ImagingError):
    """The backup source device could not be found before copying."""


class CopyFailure(ImagingError):
    """The copy subprocess exited non-zero or could not be launched."""

    def __init__(self, reason: str, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(reason)


class OperationCancelled(ImagingError):
    """The user confirmed cancellation of the running operation."""

    def __init__(self) -> None:
        super().__init__("cancelled by user")


class StageWarning(Exception):
    """Base class for stage failures that never abort the pipeline."""


class UnmountWarning(StageWarning):
    """Unmounting the target disk failed; the disk may already be unmounted."""


class ShrinkWarning(StageWarning):
    """The shrink tool ran but failed; the image is kept unshrunk."""


class ShrinkUnavailable(StageWarning):
    """The shrink tool is missing and could not be fetched."""


class OperationInProgressError(Exception):
    """A second operation was started while one is still active."""


class InvalidTransitionError(Exception):
    """A trigger is not allowed in the operation's current state."""

    def __init__(self, state: object, trigger: object):
        self.state = state
        self.trigger = trigger
        super().__init__(f"Trigger {trigger} not allowed in state {state}")
