from __future__ import annotations

import stat
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from rec_cli.capture import ProcessHandle
from rec_cli.config import RecorderConfig
from rec_cli.errors import ImmediateExitError
from rec_cli.geometry import CaptureRectangle, GeometryResolver
from rec_cli.recordings import RecordingIndex
from rec_cli.session import Outcome, SessionController
from rec_cli.session_log import SessionLog
from rec_cli.state import FileSessionStore, MemorySessionStore, Session

FAKE_FFMPEG = """#!/bin/sh
for last; do :; done
trap 'printf recorded > "$last"; exit 0' INT
while :; do sleep 0.05; done
"""


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 18, 10, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _Process:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode = None

    def poll(self) -> None:
        return None


class FakeSupervisor:
    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.launches: list[dict[str, object]] = []
        self.signals: list[tuple[str, int]] = []
        self.waits: list[tuple[int, float | None, float | None]] = []
        self.immediate_exit = False
        self.exit_on_signal = True
        self.writes_output = True
        self.devices_code = 0
        self.on_launch: Callable[[], None] | None = None
        self._next_pid = 1001

    def list_devices(self) -> int:
        return self.devices_code

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def launch(self, source, geometry, output_path, log_sink, *, log_path=None):
        if self.on_launch is not None:
            self.on_launch()
        pid = self._next_pid
        self._next_pid += 1
        self.launches.append(
            {"source": source, "geometry": geometry, "output_path": output_path, "pid": pid}
        )
        if self.immediate_exit:
            raise ImmediateExitError(pid, 1, log_path)
        self.alive.add(pid)
        return ProcessHandle(_Process(pid))

    def signal_graceful(self, pid: int) -> bool:
        self.signals.append(("INT", pid))
        if self.exit_on_signal and pid in self.alive:
            self.alive.discard(pid)
            if self.writes_output:
                for launch in self.launches:
                    if launch["pid"] == pid:
                        Path(launch["output_path"]).write_bytes(b"\x00\x00\x00\x18ftypisom")
        return True

    def pause(self, pid: int) -> bool:
        self.signals.append(("STOP", pid))
        return True

    def resume(self, pid: int) -> bool:
        self.signals.append(("CONT", pid))
        return True

    def await_exit(self, pid: int, timeout: float | None = None, poll_interval: float | None = None) -> bool:
        self.waits.append((pid, timeout, poll_interval))
        return pid not in self.alive


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def controller(
    config: RecorderConfig,
    store: MemorySessionStore,
    supervisor: FakeSupervisor,
    clock: FakeClock,
    sleeps: list[float],
) -> SessionController:
    return SessionController(
        config,
        store=store,
        supervisor=supervisor,
        resolver=GeometryResolver(config, probe=lambda source: (1920, 1080)),
        log=SessionLog(config.log_path, clock=clock),
        clock=clock,
        sleep=sleeps.append,
    )


def _expected_output(config: RecorderConfig) -> Path:
    return config.output_dir / "rec_20261018_101500.mp4"


def test_start_launches_and_records_pid(
    controller: SessionController, config: RecorderConfig, store: MemorySessionStore
) -> None:
    report = controller.start()

    assert report.outcome is Outcome.STARTED
    assert report.pid == 1001
    assert report.output_path == _expected_output(config)
    assert config.output_dir.is_dir()
    session = store.load()
    assert session.pid == 1001
    assert session.output_path == _expected_output(config)
    assert session.mode == "fullscreen"
    assert "===== START =====" in config.log_path.read_text()


def test_start_uses_explicit_output_dir(controller: SessionController, tmp_path: Path) -> None:
    report = controller.start(tmp_path / "elsewhere", title="  Demo  ")

    assert report.output_path == tmp_path / "elsewhere" / "rec_20261018_101500.mp4"


def test_second_start_reports_running_session(
    controller: SessionController, supervisor: FakeSupervisor
) -> None:
    first = controller.start()
    second = controller.start()

    assert second.outcome is Outcome.ALREADY_RUNNING
    assert second.pid == first.pid
    assert second.output_path == first.output_path
    assert len(supervisor.launches) == 1


def test_start_replaces_stale_session(
    controller: SessionController,
    store: MemorySessionStore,
    supervisor: FakeSupervisor,
    config: RecorderConfig,
) -> None:
    store.save(Session(pid=999, output_path=Path("/tmp/old.mp4")))

    report = controller.start()

    assert report.outcome is Outcome.STARTED
    assert store.load().pid == report.pid
    assert len(supervisor.launches) == 1
    assert "clearing stale session pid=999" in config.log_path.read_text()


def test_immediate_exit_leaves_no_pid(
    controller: SessionController, store: MemorySessionStore, supervisor: FakeSupervisor, config: RecorderConfig
) -> None:
    supervisor.immediate_exit = True

    report = controller.start()

    assert report.outcome is Outcome.START_FAILED
    assert report.log_path == config.log_path
    assert report.returncode == 1
    assert store.load().pid is None
    assert controller.status().outcome is Outcome.IDLE


def test_crop_is_clamped_to_source(
    controller: SessionController, store: MemorySessionStore, supervisor: FakeSupervisor
) -> None:
    controller.start(x=1800, y=1000, width=500, height=500)

    expected = CaptureRectangle(1800, 1000, 120, 80)
    assert supervisor.launches[0]["geometry"] == expected
    assert store.load().crop == expected
    assert store.load().mode == "region"


def test_partial_crop_records_full_frame(
    controller: SessionController, store: MemorySessionStore, supervisor: FakeSupervisor
) -> None:
    controller.start(x=10, y=10, width=200)

    assert supervisor.launches[0]["geometry"] is None
    assert store.load().mode == "fullscreen"


def test_output_path_is_recorded_before_launch(
    controller: SessionController, store: MemorySessionStore, supervisor: FakeSupervisor, config: RecorderConfig
) -> None:
    seen: list[Session] = []
    supervisor.on_launch = lambda: seen.append(store.load())

    controller.start()

    assert seen[0].pid is None
    assert seen[0].output_path == _expected_output(config)


def test_stop_without_session(controller: SessionController, config: RecorderConfig) -> None:
    report = controller.stop()

    assert report.outcome is Outcome.NOT_RUNNING
    assert not config.log_path.exists()


def test_stop_saves_recording(
    controller: SessionController,
    store: MemorySessionStore,
    supervisor: FakeSupervisor,
    clock: FakeClock,
    config: RecorderConfig,
) -> None:
    started = controller.start(title="Walkthrough")
    clock.advance(65)

    report = controller.stop()

    assert report.outcome is Outcome.STOPPED
    assert report.output_path == started.output_path
    assert supervisor.signals == [("INT", started.pid)]
    assert store.load() == Session()
    entries = controller.recordings()
    assert len(entries) == 1
    assert entries[0].path == started.output_path
    assert entries[0].duration_s == 65.0
    assert entries[0].title == "Walkthrough"
    assert entries[0].size_bytes == 12
    assert "===== STOP =====" in config.log_path.read_text()


def test_stop_gives_up_after_timeout(
    controller: SessionController,
    store: MemorySessionStore,
    supervisor: FakeSupervisor,
) -> None:
    supervisor.exit_on_signal = False
    started = controller.start()

    report = controller.stop()

    assert report.outcome is Outcome.STOP_UNCERTAIN
    assert report.detail == "capture process did not exit in time"
    assert supervisor.signals == [("INT", started.pid)]
    assert supervisor.waits == [(started.pid, 5.0, 0.1)]
    assert store.load().pid is None


def test_stop_without_finalized_file(
    controller: SessionController, supervisor: FakeSupervisor, sleeps: list[float]
) -> None:
    supervisor.writes_output = False
    controller.start()
    sleeps.clear()

    report = controller.stop()

    assert report.outcome is Outcome.STOP_UNCERTAIN
    assert report.detail == "output file was not finalized in time"
    assert sleeps == [0.1] * 30
    assert controller.recordings() == []


def test_status_reports_running_session(controller: SessionController) -> None:
    started = controller.start()

    report = controller.status()

    assert report.outcome is Outcome.RECORDING
    assert report.pid == started.pid
    assert report.output_path == started.output_path
    assert report.paused is False


def test_status_does_not_repair_stale_records(
    controller: SessionController, store: MemorySessionStore
) -> None:
    stale = Session(pid=999, output_path=Path("/tmp/old.mp4"))
    store.save(stale)

    assert controller.status().outcome is Outcome.IDLE
    assert store.load() == stale


def test_pause_and_resume_track_paused_time(
    controller: SessionController,
    supervisor: FakeSupervisor,
    store: MemorySessionStore,
    clock: FakeClock,
) -> None:
    started = controller.start()
    clock.advance(10)

    assert controller.pause().outcome is Outcome.PAUSED
    assert controller.pause().outcome is Outcome.ALREADY_PAUSED
    assert controller.status().paused is True
    clock.advance(20)

    assert controller.resume().outcome is Outcome.RESUMED
    assert controller.resume().outcome is Outcome.NOT_PAUSED
    assert store.load().paused_total_s == 20.0
    clock.advance(30)

    controller.stop()

    assert supervisor.signals == [
        ("STOP", started.pid),
        ("CONT", started.pid),
        ("INT", started.pid),
    ]
    assert controller.recordings()[0].duration_s == 40.0


def test_pause_and_resume_without_session(controller: SessionController) -> None:
    assert controller.pause().outcome is Outcome.NOT_RUNNING
    assert controller.resume().outcome is Outcome.NOT_RUNNING


def test_stop_resumes_paused_capture_first(
    controller: SessionController, supervisor: FakeSupervisor
) -> None:
    started = controller.start()
    controller.pause()
    supervisor.signals.clear()

    assert controller.stop().outcome is Outcome.STOPPED
    assert supervisor.signals == [("CONT", started.pid), ("INT", started.pid)]


def test_cancel_discards_output(
    controller: SessionController, store: MemorySessionStore
) -> None:
    started = controller.start()

    report = controller.cancel()

    assert report.outcome is Outcome.CANCELED
    assert report.deleted is True
    assert started.output_path is not None
    assert not started.output_path.exists()
    assert store.load() == Session()
    assert controller.recordings() == []


def test_cancel_without_session(controller: SessionController) -> None:
    assert controller.cancel().outcome is Outcome.NOT_RUNNING


def test_devices_failure_is_reported(
    controller: SessionController, supervisor: FakeSupervisor
) -> None:
    supervisor.devices_code = 1

    report = controller.devices()

    assert report.outcome is Outcome.DEVICES_FAILED
    assert report.returncode == 1
    supervisor.devices_code = 0
    assert controller.devices().outcome is Outcome.DEVICES_LISTED


def test_log_tail(controller: SessionController) -> None:
    controller.start()

    lines = controller.log_tail(2)

    assert len(lines) == 2
    assert lines[-1].endswith("start: recording pid=1001")


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_session_across_invocations(tmp_path: Path) -> None:
    script = tmp_path / "ffmpeg"
    script.write_text(FAKE_FFMPEG)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    config = RecorderConfig(
        ffmpeg_binary=str(script),
        input_format="x11grab",
        video_source=":0.0",
        output_dir=tmp_path / "videos",
        state_dir=tmp_path / "state",
        startup_grace_s=0.2,
    )

    started = SessionController(config).start()
    assert started.outcome is Outcome.STARTED
    assert config.pid_path.read_text() == str(started.pid)

    status = SessionController(config).status()
    assert status.outcome is Outcome.RECORDING
    assert status.output_path == started.output_path

    stopped = SessionController(config).stop()
    assert stopped.outcome is Outcome.STOPPED
    assert stopped.output_path == started.output_path
    assert started.output_path is not None
    assert started.output_path.read_text() == "recorded"
    assert not config.pid_path.exists()
    assert FileSessionStore.from_config(config).load() == Session()
    assert [entry.path for entry in RecordingIndex(config.output_dir).load()] == [started.output_path]


def test_out_of_range_pid_record_reads_as_idle(config: RecorderConfig) -> None:
    config.pid_path.parent.mkdir(parents=True, exist_ok=True)
    config.pid_path.write_text("99999999999999999999")
    controller = SessionController(config)

    assert controller.status().outcome is Outcome.IDLE
    assert controller.stop().outcome is Outcome.NOT_RUNNING
