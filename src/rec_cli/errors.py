"""Exception hierarchy shared by the recorder components."""
from __future__ import annotations

from pathlib import Path


class RecorderError(RuntimeError):
    """Base class for failures the CLI reports as hard errors."""


class ConfigError(RecorderError):
    """Raised when the configuration file cannot be parsed."""


class SessionStateError(RecorderError):
    """Raised when the persisted session records cannot be written or removed."""


class CaptureLaunchError(RecorderError):
    """Raised when the capture process could not be started."""


class ImmediateExitError(CaptureLaunchError):
    """The capture process started but exited within the startup grace period."""

    def __init__(
        self,
        pid: int,
        returncode: int | None,
        log_path: Path | None = None,
    ) -> None:
        self.pid = pid
        self.returncode = returncode
        self.log_path = log_path
        detail = f"ffmpeg (pid {pid}) exited immediately"
        if returncode is not None:
            detail = f"{detail} with code {returncode}"
        super().__init__(detail)


class ProcessSignalError(RecorderError):
    """Raised when the operating system refuses to deliver a signal."""


__all__ = [
    "CaptureLaunchError",
    "ConfigError",
    "ImmediateExitError",
    "ProcessSignalError",
    "RecorderError",
    "SessionStateError",
]
