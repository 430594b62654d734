"""Version information for rec-cli."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
