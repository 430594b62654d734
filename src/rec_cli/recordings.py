"""Index of finished recordings kept beside the video files."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

INDEX_FILENAME = "recordings.json"


@dataclass(frozen=True, slots=True)
class RecordingEntry:
    """Metadata describing one finished recording."""

    name: str
    path: Path
    created_at: datetime
    ended_at: datetime | None = None
    duration_s: float | None = None
    mode: str = "fullscreen"
    title: str | None = None
    size_bytes: int | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": self.name,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "mode": self.mode,
        }
        if self.ended_at is not None:
            payload["ended_at"] = self.ended_at.isoformat()
        payload["duration_s"] = self.duration_s
        if self.title:
            payload["title"] = self.title
        if self.size_bytes is not None:
            payload["size_bytes"] = self.size_bytes
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "RecordingEntry | None":
        path = payload.get("path")
        created_raw = payload.get("created_at")
        if not isinstance(path, str) or not isinstance(created_raw, str):
            return None
        try:
            created_at = datetime.fromisoformat(created_raw)
        except ValueError:
            return None
        ended_at: datetime | None = None
        ended_raw = payload.get("ended_at")
        if isinstance(ended_raw, str):
            try:
                ended_at = datetime.fromisoformat(ended_raw)
            except ValueError:
                ended_at = None
        duration = payload.get("duration_s")
        size = payload.get("size_bytes")
        name = payload.get("name")
        mode = payload.get("mode")
        title = payload.get("title")
        return cls(
            name=name if isinstance(name, str) and name else Path(path).stem,
            path=Path(path),
            created_at=created_at,
            ended_at=ended_at,
            duration_s=float(duration) if isinstance(duration, (int, float)) else None,
            mode=mode if isinstance(mode, str) and mode else "fullscreen",
            title=title if isinstance(title, str) and title else None,
            size_bytes=int(size) if isinstance(size, (int, float)) else None,
        )


class RecordingIndex:
    """JSON array of :class:`RecordingEntry` records in an output directory."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    @property
    def path(self) -> Path:
        return self._directory / INDEX_FILENAME

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(f"{INDEX_FILENAME}.bak")

    def load(self) -> list[RecordingEntry]:
        """Return indexed recordings, most recent first."""

        return self._read() or []

    def add(self, entry: RecordingEntry) -> bool:
        """Append ``entry``; returns ``False`` when the index could not be written.

        An unreadable index is moved to ``recordings.json.bak`` before a fresh
        one is written, so earlier entries can still be recovered by hand.
        """

        entries = self._read()
        if entries is None:
            try:
                self.path.replace(self.backup_path)
            except OSError as exc:
                logger.warning("Failed to move aside corrupt index %s: %s", self.path, exc)
                return False
            logger.warning("Moved corrupt recordings index to %s", self.backup_path)
            entries = []
        entries.append(entry)
        entries.sort(key=lambda item: item.created_at.timestamp(), reverse=True)
        data = json.dumps([item.to_dict() for item in entries], indent=2, ensure_ascii=False)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            self.path.write_text(data, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write recordings index %s: %s", self.path, exc)
            return False
        return True

    def _read(self) -> list[RecordingEntry] | None:
        """Return the entries, or ``None`` when the index exists but is unreadable."""

        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("Failed to decode recordings index %s: %s", self.path, exc)
            return None
        if not isinstance(payload, list):
            logger.warning("Recordings index %s is not a list", self.path)
            return None
        entries: list[RecordingEntry] = []
        for item in payload:
            if not isinstance(item, Mapping):
                continue
            entry = RecordingEntry.from_dict(item)
            if entry is not None:
                entries.append(entry)
        entries.sort(key=lambda entry: entry.created_at.timestamp(), reverse=True)
        return entries


__all__ = ["INDEX_FILENAME", "RecordingEntry", "RecordingIndex"]
