"""Configuration management for rec-cli."""
from __future__ import annotations

import json
import logging
import math
import os
import sys
import tempfile
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "REC_CLI_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/rec-cli/config.json")
DEFAULT_OUTPUT_DIR = Path("~/Videos/nvim-recordings")
DEFAULT_STATE_PREFIX = "rec.nvim"

# avfoundation lists "Capture screen 0" after the cameras on most Macs.
MACOS_SCREEN_INDEX = "4"


def _default_input_format() -> str:
    if sys.platform == "darwin":
        return "avfoundation"
    return "x11grab"


def _default_video_source() -> str:
    if sys.platform == "darwin":
        return MACOS_SCREEN_INDEX
    return os.environ.get("DISPLAY") or ":0.0"


@dataclass(frozen=True, slots=True)
class RecorderConfig:
    """Tunables for the capture invocation and the session timing budget."""

    ffmpeg_binary: str = "ffmpeg"
    input_format: str = ""
    video_source: str = ""
    framerate: int = 30
    pixel_format: str = "yuv420p"
    video_codec: str = "libx264"
    preset: str = "ultrafast"
    crf: int = 23
    profile: str = "high"
    level: str = "4.2"
    container_extension: str = "mp4"
    silent_audio: bool = True
    output_dir: Path = DEFAULT_OUTPUT_DIR
    state_dir: Path | None = None
    state_prefix: str = DEFAULT_STATE_PREFIX
    startup_grace_s: float = 0.4
    stop_timeout_s: float = 5.0
    poll_interval_s: float = 0.1
    finalize_timeout_s: float = 3.0

    def __post_init__(self) -> None:
        if not self.input_format:
            object.__setattr__(self, "input_format", _default_input_format())
        if not self.video_source:
            object.__setattr__(self, "video_source", _default_video_source())
        if not 1 <= int(self.framerate) <= 120:
            raise ValueError("Framerate must be between 1 and 120")
        if not 0 <= int(self.crf) <= 51:
            raise ValueError("CRF must be between 0 and 51")
        for name in ("startup_grace_s", "stop_timeout_s", "finalize_timeout_s"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a non-negative number")
        interval = float(self.poll_interval_s)
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError("poll_interval_s must be positive")
        extension = self.container_extension.strip().lstrip(".")
        if not extension:
            raise ValueError("Container extension must not be empty")
        object.__setattr__(self, "container_extension", extension)
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        if self.state_dir is None:
            object.__setattr__(self, "state_dir", Path(tempfile.gettempdir()))
        else:
            object.__setattr__(self, "state_dir", Path(self.state_dir).expanduser())

    def capture_input(self, source: str | None = None) -> str:
        """Return the ffmpeg ``-i`` target for ``source`` (video only)."""

        target = source or self.video_source
        if self.input_format == "avfoundation" and ":" not in target:
            # Audio comes from the silent lavfi track instead.
            return f"{target}:none"
        return target

    # ------------------------------ paths ------------------------------
    def resolved_output_dir(self) -> Path:
        return self.output_dir.expanduser()

    @property
    def pid_path(self) -> Path:
        return self._state_file("pid")

    @property
    def outpath_path(self) -> Path:
        return self._state_file("outpath")

    @property
    def session_meta_path(self) -> Path:
        return self._state_file("session.json")

    @property
    def log_path(self) -> Path:
        return self._state_file("ffmpeg.log")

    def _state_file(self, suffix: str) -> Path:
        assert self.state_dir is not None
        return self.state_dir / f"{self.state_prefix}.{suffix}"


DEFAULT_CONFIG = RecorderConfig()


def _parse_str(value: Any, *, default: str, key: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    logger.warning("Ignoring invalid value for %s: %r", key, value)
    return default


def _parse_int(value: Any, *, default: int, key: str) -> int:
    if isinstance(value, bool):
        logger.warning("Ignoring invalid value for %s: %r", key, value)
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid value for %s: %r", key, value)
        return default


def _parse_float(value: Any, *, default: float, key: str) -> float:
    if isinstance(value, bool):
        logger.warning("Ignoring invalid value for %s: %r", key, value)
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid value for %s: %r", key, value)
        return default
    if not math.isfinite(parsed):
        logger.warning("Ignoring non-finite value for %s: %r", key, value)
        return default
    return parsed


def _parse_bool(value: Any, *, default: bool, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    logger.warning("Ignoring invalid value for %s: %r", key, value)
    return default


def _parse_path(value: Any, *, default: Path | None, key: str) -> Path | None:
    if isinstance(value, str) and value.strip():
        return Path(value.strip())
    logger.warning("Ignoring invalid value for %s: %r", key, value)
    return default


def parse_config(payload: Mapping[str, Any], *, base: RecorderConfig = DEFAULT_CONFIG) -> RecorderConfig:
    """Return ``base`` updated with the recognised keys of ``payload``."""

    updates: dict[str, Any] = {}
    for field_info in fields(RecorderConfig):
        key = field_info.name
        if key not in payload:
            continue
        value = payload[key]
        default = getattr(base, key)
        if key in {"output_dir", "state_dir"}:
            updates[key] = _parse_path(value, default=default, key=key)
        elif key == "silent_audio":
            updates[key] = _parse_bool(value, default=default, key=key)
        elif key in {"framerate", "crf"}:
            updates[key] = _parse_int(value, default=default, key=key)
        elif key.endswith("_s"):
            updates[key] = _parse_float(value, default=default, key=key)
        else:
            updates[key] = _parse_str(value, default=default, key=key)
    try:
        return replace(base, **updates)
    except ValueError as exc:
        raise ConfigError(f"Failed to load configuration: {exc}") from exc


def resolve_config_path(explicit: Path | str | None = None) -> Path:
    """Return the configuration file location that should be consulted."""

    if explicit:
        return Path(explicit).expanduser()
    env_value = os.environ.get(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: Path | str | None = None) -> RecorderConfig:
    """Load the recorder configuration, falling back to defaults when absent."""

    config_path = resolve_config_path(path)
    if not config_path.exists():
        logger.debug("No configuration at %s; using defaults", config_path)
        return RecorderConfig()
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Configuration file must contain a JSON object")
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Failed to load configuration: {exc}") from exc
    return parse_config(payload, base=RecorderConfig())


__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_OUTPUT_DIR",
    "RecorderConfig",
    "load_config",
    "parse_config",
    "resolve_config_path",
]
