"""Session lifecycle: devices, start, stop, status, pause, resume and cancel."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

from .capture import CaptureProcessSupervisor, wait_for_artifact
from .config import RecorderConfig
from .errors import CaptureLaunchError, ImmediateExitError, ProcessSignalError
from .geometry import GeometryResolver, crop_request
from .recordings import RecordingEntry, RecordingIndex
from .session_log import SessionLog
from .state import (
    FileSessionStore,
    Session,
    SessionState,
    SessionStore,
    reconcile,
)

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Logical result of a controller operation."""

    DEVICES_LISTED = "devices_listed"
    DEVICES_FAILED = "devices_failed"
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    START_FAILED = "start_failed"
    STOPPED = "stopped"
    STOP_UNCERTAIN = "stop_uncertain"
    NOT_RUNNING = "not_running"
    RECORDING = "recording"
    IDLE = "idle"
    PAUSED = "paused"
    ALREADY_PAUSED = "already_paused"
    RESUMED = "resumed"
    NOT_PAUSED = "not_paused"
    CANCELED = "canceled"


@dataclass(frozen=True, slots=True)
class SessionReport:
    """What happened, with enough context for the console to explain it."""

    outcome: Outcome
    pid: int | None = None
    output_path: Path | None = None
    log_path: Path | None = None
    paused: bool = False
    deleted: bool = False
    returncode: int | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"outcome": self.outcome.value}
        if self.pid is not None:
            payload["pid"] = self.pid
        if self.output_path is not None:
            payload["output_path"] = str(self.output_path)
        if self.log_path is not None:
            payload["log_path"] = str(self.log_path)
        if self.paused:
            payload["paused"] = True
        if self.deleted:
            payload["deleted"] = True
        if self.returncode is not None:
            payload["returncode"] = self.returncode
        if self.detail:
            payload["detail"] = self.detail
        return payload


def _now() -> datetime:
    return datetime.now().astimezone()


class SessionController:
    """Drive one capture session at a time using persisted records."""

    def __init__(
        self,
        config: RecorderConfig,
        *,
        store: SessionStore | None = None,
        supervisor: CaptureProcessSupervisor | None = None,
        resolver: GeometryResolver | None = None,
        log: SessionLog | None = None,
        clock: Callable[[], datetime] = _now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._store = store or FileSessionStore.from_config(config)
        self._supervisor = supervisor or CaptureProcessSupervisor(config, sleep=sleep)
        self._resolver = resolver or GeometryResolver(config)
        self._log = log or SessionLog(config.log_path)
        self._clock = clock
        self._sleep = sleep

    @property
    def log_path(self) -> Path:
        return self._log.path

    # ------------------------------ commands ----------------------------
    def devices(self) -> SessionReport:
        returncode = self._supervisor.list_devices()
        if returncode != 0:
            logger.warning("ffmpeg device listing exited with code %s", returncode)
            return SessionReport(Outcome.DEVICES_FAILED, returncode=returncode)
        return SessionReport(Outcome.DEVICES_LISTED, returncode=returncode)

    def start(
        self,
        output_dir: Path | str | None = None,
        *,
        x: int | None = None,
        y: int | None = None,
        width: int | None = None,
        height: int | None = None,
        title: str | None = None,
        source: str | None = None,
    ) -> SessionReport:
        current = reconcile(self._store.load(), self._supervisor.is_alive)
        if current.state is SessionState.RECORDING:
            logger.info("Recording already running as pid %s", current.session.pid)
            return SessionReport(
                Outcome.ALREADY_RUNNING,
                pid=current.session.pid,
                output_path=current.session.output_path,
            )
        if current.stale:
            logger.info("Clearing stale session for pid %s", current.session.pid)
            self._log.record("start", "clearing stale session", pid=current.session.pid)
            self._store.clear()

        directory = self._resolve_output_dir(output_dir)
        started_at = self._clock()
        output_path = directory / f"rec_{started_at:%Y%m%d_%H%M%S}.{self._config.container_extension}"

        capture_source = source or self._config.video_source
        geometry = self._resolver.resolve(crop_request(x, y, width, height), capture_source)
        pending = Session(
            output_path=output_path,
            started_at=started_at,
            mode="region" if geometry is not None else "fullscreen",
            crop=geometry,
            title=title.strip() if title and title.strip() else None,
        )
        # Persisted before launch so a later stop can still find the log and output.
        self._store.save(pending)

        self._log.banner("start")
        self._log.record("start", "input", source=self._config.capture_input(capture_source))
        self._log.record("start", "output", path=output_path)
        if geometry is not None:
            self._log.record("start", "crop filter", filter=geometry.filter_expression())

        with self._log.open_sink() as sink:
            try:
                handle = self._supervisor.launch(
                    capture_source,
                    geometry,
                    output_path,
                    sink,
                    log_path=self._log.path,
                )
            except ImmediateExitError as exc:
                logger.warning("%s; see %s", exc, self._log.path)
                self._log.record(
                    "start", "ffmpeg exited immediately", pid=exc.pid, code=exc.returncode
                )
                return SessionReport(
                    Outcome.START_FAILED,
                    pid=exc.pid,
                    output_path=output_path,
                    log_path=self._log.path,
                    returncode=exc.returncode,
                    detail=str(exc),
                )
            except CaptureLaunchError as exc:
                self._log.record("start", "launch failed", error=exc)
                raise

        self._store.save(replace(pending, pid=handle.pid))
        self._log.record("start", "recording", pid=handle.pid)
        return SessionReport(Outcome.STARTED, pid=handle.pid, output_path=output_path)

    def stop(self) -> SessionReport:
        session = self._store.load()
        if session.pid is None:
            return SessionReport(Outcome.NOT_RUNNING)

        self._log.banner("stop")
        exited = self._shutdown(session)
        # A process that ignores the interrupt is abandoned, not re-tracked.
        self._store.clear()

        output_path = session.output_path
        if output_path is None:
            self._log.record("stop", "no output path recorded", pid=session.pid)
            return SessionReport(
                Outcome.STOP_UNCERTAIN,
                pid=session.pid,
                log_path=self._log.path,
                detail="no output path recorded",
            )
        finalized = wait_for_artifact(
            output_path,
            timeout=self._config.finalize_timeout_s,
            poll_interval=self._config.poll_interval_s,
            sleep=self._sleep,
        )
        if not exited or not finalized:
            detail = (
                "capture process did not exit in time"
                if not exited
                else "output file was not finalized in time"
            )
            logger.warning("%s (%s)", detail, output_path)
            self._log.record("stop", detail, pid=session.pid, path=output_path)
            return SessionReport(
                Outcome.STOP_UNCERTAIN,
                pid=session.pid,
                output_path=output_path,
                log_path=self._log.path,
                detail=detail,
            )

        self._log.record("stop", "saved", path=output_path)
        self._index_recording(session, output_path)
        return SessionReport(Outcome.STOPPED, pid=session.pid, output_path=output_path)

    def status(self) -> SessionReport:
        """Report the session without repairing stale records."""

        current = reconcile(self._store.load(), self._supervisor.is_alive)
        if current.state is SessionState.RECORDING:
            return SessionReport(
                Outcome.RECORDING,
                pid=current.session.pid,
                output_path=current.session.output_path,
                paused=current.session.paused,
            )
        if current.stale:
            logger.debug("Recorded pid %s is not alive", current.session.pid)
        return SessionReport(Outcome.IDLE)

    def pause(self) -> SessionReport:
        current = reconcile(self._store.load(), self._supervisor.is_alive)
        session = current.session
        if current.state is not SessionState.RECORDING or session.pid is None:
            return SessionReport(Outcome.NOT_RUNNING)
        if session.paused:
            return SessionReport(
                Outcome.ALREADY_PAUSED, pid=session.pid, output_path=session.output_path, paused=True
            )
        self._supervisor.pause(session.pid)
        self._store.save(replace(session, paused=True, paused_at=self._clock()))
        self._log.record("pause", "recording paused", pid=session.pid)
        return SessionReport(
            Outcome.PAUSED, pid=session.pid, output_path=session.output_path, paused=True
        )

    def resume(self) -> SessionReport:
        current = reconcile(self._store.load(), self._supervisor.is_alive)
        session = current.session
        if current.state is not SessionState.RECORDING or session.pid is None:
            return SessionReport(Outcome.NOT_RUNNING)
        if not session.paused:
            return SessionReport(Outcome.NOT_PAUSED, pid=session.pid, output_path=session.output_path)
        self._supervisor.resume(session.pid)
        paused_total = session.paused_total_s + self._paused_for(session)
        self._store.save(
            replace(session, paused=False, paused_at=None, paused_total_s=paused_total)
        )
        self._log.record("resume", "recording resumed", pid=session.pid)
        return SessionReport(Outcome.RESUMED, pid=session.pid, output_path=session.output_path)

    def cancel(self) -> SessionReport:
        """Stop the session and discard its output file."""

        session = self._store.load()
        if session.pid is None:
            return SessionReport(Outcome.NOT_RUNNING)

        self._log.banner("cancel")
        self._shutdown(session)
        self._store.clear()
        deleted = False
        if session.output_path is not None:
            try:
                session.output_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Unable to delete canceled recording %s: %s", session.output_path, exc)
            else:
                deleted = True
        self._log.record("cancel", "recording discarded", path=session.output_path, deleted=deleted)
        return SessionReport(
            Outcome.CANCELED, pid=session.pid, output_path=session.output_path, deleted=deleted
        )

    def recordings(self, output_dir: Path | str | None = None) -> list[RecordingEntry]:
        directory = Path(output_dir).expanduser() if output_dir else self._config.resolved_output_dir()
        return RecordingIndex(directory).load()

    def log_tail(self, lines: int = 40) -> list[str]:
        return self._log.tail(lines)

    # ----------------------------- implementation --------------------------
    def _resolve_output_dir(self, output_dir: Path | str | None) -> Path:
        directory = Path(output_dir).expanduser() if output_dir else self._config.resolved_output_dir()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CaptureLaunchError(f"unable to create output directory {directory}: {exc}") from exc
        return directory

    def _shutdown(self, session: Session) -> bool:
        pid = session.pid
        assert pid is not None
        try:
            if session.paused:
                # A stopped process cannot act on SIGINT.
                self._supervisor.resume(pid)
            self._supervisor.signal_graceful(pid)
        except ProcessSignalError as exc:
            logger.warning("%s", exc)
            self._log.record("stop", "signal refused", pid=pid, error=exc)
            return False
        exited = self._supervisor.await_exit(
            pid, self._config.stop_timeout_s, self._config.poll_interval_s
        )
        if exited:
            self._log.record("stop", "capture process exited", pid=pid)
        else:
            self._log.record(
                "stop", "capture process still running", pid=pid, timeout=self._config.stop_timeout_s
            )
        return exited

    def _paused_for(self, session: Session) -> float:
        if session.paused_at is None:
            return 0.0
        try:
            return max(0.0, (self._clock() - session.paused_at).total_seconds())
        except TypeError:
            return 0.0

    def _index_recording(self, session: Session, output_path: Path) -> None:
        ended_at = self._clock()
        duration: float | None = None
        if session.started_at is not None:
            try:
                elapsed = (ended_at - session.started_at).total_seconds()
            except TypeError:
                elapsed = None
            if elapsed is not None:
                paused = session.paused_total_s
                if session.paused:
                    paused += self._paused_for(session)
                duration = round(max(0.0, elapsed - paused), 3)
        try:
            size: int | None = output_path.stat().st_size
        except OSError:
            size = None
        entry = RecordingEntry(
            name=output_path.stem,
            path=output_path,
            created_at=session.started_at or ended_at,
            ended_at=ended_at,
            duration_s=duration,
            mode=session.mode or "fullscreen",
            title=session.title,
            size_bytes=size,
        )
        if not RecordingIndex(output_path.parent).add(entry):
            self._log.record("stop", "recording not added to index", path=output_path)


__all__ = ["Outcome", "SessionController", "SessionReport"]
