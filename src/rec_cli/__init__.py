"""rec-cli package exposing the screen recording session controller."""

from typing import Any

from .version import APP_VERSION


def main(*args: Any, **kwargs: Any) -> int:
    from .cli import main as _main

    return _main(*args, **kwargs)


__all__ = ["main", "APP_VERSION"]
