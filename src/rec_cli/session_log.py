"""Append-only diagnostic log shared by every rec-cli invocation and ffmpeg."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import IO, Callable, Deque

from .errors import CaptureLaunchError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now().astimezone()


class SessionLog:
    """Plain-text event log that ffmpeg's stderr is appended to as well.

    Controller events are advisory: failing to write them never aborts a
    command. Opening the sink for the capture process is load-bearing and
    raises :class:`CaptureLaunchError` instead.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._path = Path(path)
        self._clock = clock

    # ------------------------------ properties -----------------------------
    @property
    def path(self) -> Path:
        """Return the backing file path."""

        return self._path

    # ------------------------------ operations -----------------------------
    def banner(self, title: str) -> None:
        """Write a ``===== TITLE =====`` separator line."""

        self._append(f"===== {title.strip().upper()} =====")

    def record(self, event: str, message: str, **metadata: object) -> str:
        """Append a timestamped event line and return the text written."""

        cleaned_event = event.strip() if isinstance(event, str) else ""
        if not cleaned_event:
            cleaned_event = "general"
        line = f"[{self._clock().isoformat(timespec='seconds')}] {cleaned_event}: {message}"
        extras = " ".join(
            f"{key}={value}" for key, value in metadata.items() if value is not None
        )
        if extras:
            line = f"{line} {extras}"
        self._append(line)
        return line

    def open_sink(self) -> IO[bytes]:
        """Return a binary append handle suitable for a child's stderr."""

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return self._path.open("ab")
        except OSError as exc:
            raise CaptureLaunchError(f"unable to open log {self._path}: {exc}") from exc

    def tail(self, limit: int = 40) -> list[str]:
        """Return up to ``limit`` trailing lines of the log."""

        try:
            limit_value = max(1, int(limit))
        except (TypeError, ValueError):
            limit_value = 1
        if not self._path.exists():
            return []
        lines: Deque[str] = deque(maxlen=limit_value)
        try:
            with self._path.open("r", encoding="utf-8", errors="replace") as handle:
                for raw_line in handle:
                    lines.append(raw_line.rstrip("\r\n"))
        except OSError as exc:  # pragma: no cover - best effort reading
            logger.warning("Unable to read session log: %s", exc)
            return []
        return list(lines)

    # ----------------------------- implementation --------------------------
    def _append(self, line: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Unable to write session log %s: %s", self._path, exc)


__all__ = ["SessionLog"]
