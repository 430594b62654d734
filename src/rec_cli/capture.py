"""ffmpeg invocation and supervision of the detached capture process."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable

from .config import RecorderConfig
from .errors import CaptureLaunchError, ImmediateExitError, ProcessSignalError
from .geometry import CaptureRectangle

logger = logging.getLogger(__name__)

_FASTSTART_CONTAINERS = frozenset({"mp4", "mov", "m4v"})
_DEVICE_LISTING_FORMATS = frozenset({"avfoundation", "dshow"})


def build_capture_command(
    config: RecorderConfig,
    output_path: Path,
    *,
    source: str | None = None,
    geometry: CaptureRectangle | None = None,
) -> list[str]:
    """Return the full ffmpeg argument vector for a capture session."""

    command = [
        config.ffmpeg_binary,
        "-y",
        "-f",
        config.input_format,
        "-framerate",
        str(config.framerate),
        "-i",
        config.capture_input(source),
    ]
    if config.silent_audio:
        # QuickTime refuses mp4 files without an audio track.
        command += ["-f", "lavfi", "-i", "anullsrc"]
    command += [
        "-pix_fmt",
        config.pixel_format,
        "-profile:v",
        config.profile,
        "-level",
        config.level,
    ]
    if config.container_extension.lower() in _FASTSTART_CONTAINERS:
        command += ["-movflags", "+faststart"]
    command += [
        "-c:v",
        config.video_codec,
        "-preset",
        config.preset,
        "-crf",
        str(config.crf),
    ]
    if config.silent_audio:
        command.append("-shortest")
    if geometry is not None:
        command += ["-filter:v", geometry.filter_expression()]
    command.append(str(output_path))
    return command


def build_device_list_command(config: RecorderConfig) -> list[str]:
    """Return the ffmpeg invocation that lists capture devices or sources."""

    if config.input_format in _DEVICE_LISTING_FORMATS:
        return [
            config.ffmpeg_binary,
            "-hide_banner",
            "-f",
            config.input_format,
            "-list_devices",
            "true",
            "-i",
            "",
        ]
    return [config.ffmpeg_binary, "-hide_banner", "-sources", config.input_format]


@dataclass(slots=True)
class ProcessHandle:
    """Opaque handle on a capture process launched by this invocation."""

    process: subprocess.Popen[bytes]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def is_alive(self) -> bool:
        return self.process.poll() is None


class CaptureProcessSupervisor:
    """Launch, probe, signal and wait for the external capture process."""

    def __init__(
        self,
        config: RecorderConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
        runner: Callable[..., Any] = subprocess.run,
    ) -> None:
        self._config = config
        self._sleep = sleep
        self._popen = popen
        self._runner = runner

    # ------------------------------ launching ---------------------------
    def launch(
        self,
        source: str,
        geometry: CaptureRectangle | None,
        output_path: Path,
        log_sink: IO[bytes],
        *,
        log_path: Path | None = None,
    ) -> ProcessHandle:
        """Start ffmpeg detached and confirm it survives the grace period."""

        command = build_capture_command(
            self._config, output_path, source=source, geometry=geometry
        )
        logger.debug("Launching capture: %s", " ".join(command))
        try:
            process = self._popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_sink,
                start_new_session=True,
            )
        except OSError as exc:
            raise CaptureLaunchError(f"failed to launch {command[0]}: {exc}") from exc
        handle = ProcessHandle(process)
        # A misconfigured ffmpeg dies almost immediately.
        self._sleep(self._config.startup_grace_s)
        if not handle.is_alive():
            raise ImmediateExitError(handle.pid, handle.returncode, log_path)
        logger.info("Capture process %s running, writing %s", handle.pid, output_path)
        return handle

    def list_devices(self) -> int:
        """Run the device listing with inherited console streams."""

        command = build_device_list_command(self._config)
        try:
            completed = self._runner(command, check=False)
        except OSError as exc:
            raise CaptureLaunchError(f"failed to launch {command[0]}: {exc}") from exc
        return int(completed.returncode)

    # ------------------------------ probing -----------------------------
    @staticmethod
    def is_alive(pid: int) -> bool:
        """Return whether ``pid`` still exists, reaping it if it is our child."""

        try:
            reaped, _status = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass
        else:
            if reaped == pid:
                return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to someone else.
            return True
        return True

    # ------------------------------ signalling --------------------------
    def signal_graceful(self, pid: int) -> bool:
        """Ask ffmpeg to finish the container; never a forced kill."""

        return self._send(pid, signal.SIGINT)

    def pause(self, pid: int) -> bool:
        return self._send(pid, signal.SIGSTOP)

    def resume(self, pid: int) -> bool:
        return self._send(pid, signal.SIGCONT)

    def await_exit(
        self,
        pid: int,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> bool:
        """Poll until ``pid`` exits; return ``False`` if it outlives ``timeout``."""

        timeout_s = self._config.stop_timeout_s if timeout is None else timeout
        interval = self._config.poll_interval_s if poll_interval is None else poll_interval
        attempts = max(1, round(timeout_s / interval))
        for _ in range(attempts):
            if not self.is_alive(pid):
                return True
            self._sleep(interval)
        return not self.is_alive(pid)

    def _send(self, pid: int, kind: signal.Signals) -> bool:
        try:
            os.kill(pid, kind)
        except ProcessLookupError:
            logger.debug("Process %s already gone before %s", pid, kind.name)
            return False
        except PermissionError as exc:
            raise ProcessSignalError(f"not permitted to send {kind.name} to {pid}: {exc}") from exc
        logger.debug("Sent %s to %s", kind.name, pid)
        return True


def wait_for_artifact(
    path: Path,
    *,
    timeout: float,
    poll_interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Return ``True`` once ``path`` exists with a non-zero size."""

    attempts = max(1, round(timeout / poll_interval))
    for _ in range(attempts):
        try:
            if path.stat().st_size > 0:
                return True
        except OSError:
            pass
        sleep(poll_interval)
    return False


__all__ = [
    "CaptureProcessSupervisor",
    "ProcessHandle",
    "build_capture_command",
    "build_device_list_command",
    "wait_for_artifact",
]
