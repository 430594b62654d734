"""Session records persisted between independent rec-cli invocations."""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from .config import RecorderConfig
from .errors import SessionStateError
from .geometry import CaptureRectangle

logger = logging.getLogger(__name__)

# Largest value a pid_t can hold.
_PID_MAX = 2**31 - 1


class SessionState(str, Enum):
    """Lifecycle state reconstructed from the records plus a liveness probe."""

    IDLE = "idle"
    RECORDING = "recording"


@dataclass(frozen=True, slots=True)
class Session:
    """Durable facts about the current or most recent capture session."""

    pid: int | None = None
    output_path: Path | None = None
    started_at: datetime | None = None
    mode: str | None = None
    crop: CaptureRectangle | None = None
    title: str | None = None
    paused: bool = False
    paused_at: datetime | None = None
    paused_total_s: float = 0.0

    @property
    def active(self) -> bool:
        return self.pid is not None

    def metadata(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "paused": self.paused,
            "paused_total_s": self.paused_total_s,
        }
        if self.started_at is not None:
            payload["started_at"] = self.started_at.isoformat()
        if self.mode is not None:
            payload["mode"] = self.mode
        if self.crop is not None:
            payload["crop"] = self.crop.to_dict()
        if self.title:
            payload["title"] = self.title
        if self.paused_at is not None:
            payload["paused_at"] = self.paused_at.isoformat()
        return payload

    def with_metadata(self, payload: Mapping[str, Any]) -> "Session":
        """Return a copy populated from a metadata mapping, skipping bad values."""

        paused_total = payload.get("paused_total_s", 0.0)
        try:
            paused_total_s = max(0.0, float(paused_total))
        except (TypeError, ValueError):
            paused_total_s = 0.0
        if not math.isfinite(paused_total_s):
            paused_total_s = 0.0
        mode = payload.get("mode")
        title = payload.get("title")
        return replace(
            self,
            started_at=_parse_timestamp(payload.get("started_at")),
            mode=mode if isinstance(mode, str) and mode else None,
            crop=_parse_crop(payload.get("crop")),
            title=title if isinstance(title, str) and title else None,
            paused=payload.get("paused") is True,
            paused_at=_parse_timestamp(payload.get("paused_at")),
            paused_total_s=paused_total_s,
        )


@dataclass(frozen=True, slots=True)
class Reconciliation:
    """Outcome of comparing persisted records against process liveness."""

    state: SessionState
    session: Session
    stale: bool = False


def reconcile(session: Session, is_alive: Callable[[int], bool]) -> Reconciliation:
    """Derive the session state without side effects.

    A recorded pid whose process is gone is reported as idle with
    ``stale=True`` so callers can decide whether to clean up.
    """

    if session.pid is None:
        return Reconciliation(SessionState.IDLE, session)
    if is_alive(session.pid):
        return Reconciliation(SessionState.RECORDING, session)
    return Reconciliation(SessionState.IDLE, session, stale=True)


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse_crop(value: object) -> CaptureRectangle | None:
    if not isinstance(value, Mapping):
        return None
    try:
        return CaptureRectangle(
            int(value["x"]),
            int(value["y"]),
            int(value["width"]),
            int(value["height"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


class SessionStore:
    """Storage protocol for the persisted session."""

    def load(self) -> Session:  # pragma: no cover - interface
        raise NotImplementedError

    def save(self, session: Session) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def clear(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    """Keep the session in memory; used by tests and embedding callers."""

    def __init__(self, session: Session | None = None) -> None:
        self._session = session or Session()

    def load(self) -> Session:
        return self._session

    def save(self, session: Session) -> None:
        self._session = session

    def clear(self) -> None:
        self._session = Session()


class FileSessionStore(SessionStore):
    """Persist the session as small well-known files.

    The pid and output path each live in their own single-value file so other
    tools can read them with ``cat``; the remaining fields are kept in a JSON
    metadata record. Unreadable content loads as an absent field.
    """

    def __init__(self, pid_path: Path, outpath_path: Path, meta_path: Path) -> None:
        self._pid_path = Path(pid_path)
        self._outpath_path = Path(outpath_path)
        self._meta_path = Path(meta_path)

    @classmethod
    def from_config(cls, config: RecorderConfig) -> "FileSessionStore":
        return cls(config.pid_path, config.outpath_path, config.session_meta_path)

    # ------------------------------ operations -----------------------------
    def load(self) -> Session:
        session = Session(pid=self._read_pid(), output_path=self._read_output_path())
        meta = self._read_metadata()
        if meta is not None:
            session = session.with_metadata(meta)
        return session

    def save(self, session: Session) -> None:
        try:
            self._pid_path.parent.mkdir(parents=True, exist_ok=True)
            if session.pid is None:
                self._pid_path.unlink(missing_ok=True)
            else:
                self._pid_path.write_text(str(session.pid), encoding="utf-8")
            if session.output_path is None:
                self._outpath_path.unlink(missing_ok=True)
            else:
                self._outpath_path.write_text(str(session.output_path), encoding="utf-8")
            data = json.dumps(session.metadata(), separators=(",", ":"))
            self._meta_path.write_text(data, encoding="utf-8")
        except OSError as exc:
            raise SessionStateError(f"Failed to persist session state: {exc}") from exc

    def clear(self) -> None:
        for path in (self._pid_path, self._outpath_path, self._meta_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise SessionStateError(f"Failed to clear session state {path}: {exc}") from exc

    # ----------------------------- implementation --------------------------
    def _read_pid(self) -> int | None:
        try:
            raw = self._pid_path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError):
            return None
        try:
            pid = int(raw)
        except ValueError:
            logger.debug("Ignoring unparsable pid record %r", raw)
            return None
        if not 0 < pid <= _PID_MAX:
            logger.debug("Ignoring out-of-range pid record %r", raw)
            return None
        return pid

    def _read_output_path(self) -> Path | None:
        try:
            raw = self._outpath_path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError):
            return None
        return Path(raw) if raw else None

    def _read_metadata(self) -> dict[str, object] | None:
        try:
            payload = json.loads(self._meta_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError):
            return None
        return payload if isinstance(payload, dict) else None


__all__ = [
    "FileSessionStore",
    "MemorySessionStore",
    "Reconciliation",
    "Session",
    "SessionState",
    "SessionStore",
    "reconcile",
]
