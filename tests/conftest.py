from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from rec_cli.config import RecorderConfig


@pytest.fixture(autouse=True)
def restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config(tmp_path: Path) -> RecorderConfig:
    return RecorderConfig(
        input_format="x11grab",
        video_source=":0.0",
        output_dir=tmp_path / "videos",
        state_dir=tmp_path / "state",
    )
