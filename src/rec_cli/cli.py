"""Command-line entry point for rec-cli."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from .config import load_config
from .errors import RecorderError
from .recordings import RecordingEntry
from .session import Outcome, SessionController, SessionReport
from .version import APP_VERSION

logger = logging.getLogger(__name__)

LOG_LEVELS: dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def configure_logging(
    level_name: str,
    *,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%H:%M:%S",
) -> None:
    """Send log records at ``level_name`` and above to stderr."""

    level = LOG_LEVELS.get(level_name.lower())
    if level is None:
        valid = ", ".join(sorted(LOG_LEVELS))
        raise ValueError(f"Invalid log level '{level_name}'. Choose from: {valid}")

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    root.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the recorder CLI."""

    parser = argparse.ArgumentParser(
        prog="rec-cli",
        description="Start, stop and inspect a screen recording session.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--config", help="Path to a JSON configuration file.")
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=sorted(LOG_LEVELS),
        help="Diagnostic verbosity on stderr (default: warning).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("devices", help="List capture devices known to ffmpeg.")

    start = commands.add_parser("start", help="Start recording (optionally cropped).")
    start.add_argument("--output-dir", help="Directory for the recording.")
    start.add_argument("--x", type=int, help="Crop X offset in pixels.")
    start.add_argument("--y", type=int, help="Crop Y offset in pixels.")
    start.add_argument("--width", type=int, help="Crop width in pixels.")
    start.add_argument("--height", type=int, help="Crop height in pixels.")
    start.add_argument("--title", help="Title stored in the recordings index.")
    start.add_argument("--source", help="Override the configured capture source.")

    stop = commands.add_parser("stop", help="Stop recording and wait for the file.")
    # Accepted for compatibility with older editor integrations.
    stop.add_argument("--output-dir", help=argparse.SUPPRESS)

    commands.add_parser("status", help="Report whether a recording is running.")
    commands.add_parser("pause", help="Suspend the running capture.")
    commands.add_parser("resume", help="Resume a paused capture.")
    commands.add_parser("cancel", help="Stop recording and delete the file.")

    listing = commands.add_parser("list", help="List indexed recordings.")
    listing.add_argument("--output-dir", help="Directory holding the recordings index.")

    log = commands.add_parser("log", help="Show the end of the diagnostic log.")
    log.add_argument("--lines", type=int, default=40, help="Number of lines (default: 40).")
    return parser


def render_report(report: SessionReport) -> list[str]:
    """Return the console lines for ``report``."""

    outcome = report.outcome
    if outcome is Outcome.STARTED:
        return ["Recording started", f"Output: {report.output_path}"]
    if outcome is Outcome.ALREADY_RUNNING:
        return ["REC_ALREADY_RUNNING"]
    if outcome is Outcome.START_FAILED:
        return ["REC_START_ERR", "ffmpeg exited immediately", f"Log: {report.log_path}"]
    if outcome is Outcome.NOT_RUNNING:
        return ["REC_NOT_RUNNING"]
    if outcome is Outcome.STOPPED:
        return ["Recording stopped", f"Recording saved: {report.output_path}"]
    if outcome is Outcome.STOP_UNCERTAIN:
        return ["REC_STOP_ERR", f"Check log: {report.log_path}"]
    if outcome is Outcome.RECORDING:
        lines = ["REC_RECORDING", f"PID: {report.pid}", f"Output: {report.output_path}"]
        if report.paused:
            lines.append("Paused")
        return lines
    if outcome is Outcome.IDLE:
        return ["REC_IDLE"]
    if outcome is Outcome.PAUSED:
        return ["REC_PAUSED"]
    if outcome is Outcome.ALREADY_PAUSED:
        return ["REC_ALREADY_PAUSED"]
    if outcome is Outcome.RESUMED:
        return ["REC_RESUMED"]
    if outcome is Outcome.NOT_PAUSED:
        return ["REC_NOT_PAUSED"]
    if outcome is Outcome.CANCELED:
        lines = ["REC_CANCELED"]
        if report.deleted:
            lines.append(f"Deleted: {report.output_path}")
        return lines
    # Device listing output already went straight to the console.
    return []


def _format_entry(entry: RecordingEntry) -> str:
    parts = [entry.created_at.strftime("%Y-%m-%d %H:%M"), entry.mode]
    if entry.duration_s is not None:
        minutes, seconds = divmod(int(round(entry.duration_s)), 60)
        parts.append(f"{minutes:02d}:{seconds:02d}")
    label = entry.title or entry.name
    return f"{'  '.join(parts)}  {label}  {entry.path}"


def _emit(payload: object, lines: Sequence[str], *, as_json: bool) -> None:
    if as_json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return
    for line in lines:
        print(line)


def run(argv: Sequence[str] | None = None, *, controller: SessionController | None = None) -> int:
    """Execute the CLI and return the process exit status."""

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        if controller is None:
            controller = SessionController(load_config(args.config))
        command = args.command
        if command == "list":
            entries = controller.recordings(args.output_dir)
            lines = [_format_entry(entry) for entry in entries] or ["No recordings found"]
            _emit([entry.to_dict() for entry in entries], lines, as_json=args.json)
            return 0
        if command == "log":
            lines = controller.log_tail(args.lines)
            _emit({"log_path": str(controller.log_path), "lines": lines}, lines, as_json=args.json)
            return 0
        if command == "devices":
            report = controller.devices()
            if report.outcome is Outcome.DEVICES_FAILED:
                print("ffmpeg device listing failed", file=sys.stderr)
        elif command == "start":
            report = controller.start(
                args.output_dir,
                x=args.x,
                y=args.y,
                width=args.width,
                height=args.height,
                title=args.title,
                source=args.source,
            )
        elif command == "stop":
            report = controller.stop()
        elif command == "status":
            report = controller.status()
        elif command == "pause":
            report = controller.pause()
        elif command == "resume":
            report = controller.resume()
        elif command == "cancel":
            report = controller.cancel()
        else:  # pragma: no cover - argparse rejects unknown commands
            parser.error(f"unknown command {command!r}")
            return 2
    except RecorderError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"REC_ERROR: {exc}", file=sys.stderr)
        return 1

    _emit(report.to_dict(), render_report(report), as_json=args.json)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``rec-cli`` script and ``python -m rec_cli``."""

    return run(argv)


__all__ = ["build_parser", "configure_logging", "main", "render_report", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
